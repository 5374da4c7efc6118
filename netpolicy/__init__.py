from .estimators.its import ITS
from .estimators.placebo import PLACEBO
from .estimators.did import DID
from .analysis import run_onlineaz_analysis, run_tariff_analysis

# Define __all__ to specify the public API of the netpolicy package
__all__ = [
    "ITS",
    "PLACEBO",
    "DID",
    "run_onlineaz_analysis",
    "run_tariff_analysis",
]
