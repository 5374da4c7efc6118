"""Custom exception classes for the netpolicy library."""

class NetpolicyError(Exception):
    """Base class for all custom exceptions in the netpolicy library."""
    pass

class NetpolicyConfigError(NetpolicyError):
    """Exception raised for errors in configuration."""
    pass

class DataIntegrityError(NetpolicyError):
    """Exception raised for malformed or duplicate input rows."""
    pass

class InsufficientDataError(NetpolicyError):
    """Exception raised when there are too few observations for the model's degrees of freedom."""
    pass

class SingularDesignError(NetpolicyError):
    """Exception raised when a regression design matrix is rank-deficient."""
    pass

class InsufficientEligibleDatesError(NetpolicyError):
    """Exception raised when the placebo exclusion buffer leaves too few candidate dates."""
    pass

class UnbalancedCutoffError(NetpolicyError):
    """Exception raised when a DID group has no observations in the pre- or post-window."""
    pass

class NetpolicyPlottingError(NetpolicyError):
    """Exception raised for errors during plot generation."""
    pass
