"""Installing resolved distributions into target environments."""
from .environment import TargetEnvironment, inspect_interpreter
from .installer import InstallReport, Installer
from .records import InstalledRecord

__all__ = ["InstallReport", "InstalledRecord", "Installer", "TargetEnvironment", "inspect_interpreter"]
