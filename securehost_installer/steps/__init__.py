from .step_10_probe import ProbeStep
from .step_20_packages import InstallPackagesStep
from .step_30_volume import PrepareVolumeStep
from .step_40_services import StartServicesStep
from .step_90_finalize import FinalizeStep

__all__ = [
    "ProbeStep",
    "InstallPackagesStep",
    "PrepareVolumeStep",
    "StartServicesStep",
    "FinalizeStep",
]
