from .detect import BinaryInfo, REQUIRED_VERSION, detect, extract_version, is_compatible
from .repo import ResticRepository, ResticSnapshot

__all__ = [
    "BinaryInfo",
    "REQUIRED_VERSION",
    "detect",
    "extract_version",
    "is_compatible",
    "ResticRepository",
    "ResticSnapshot",
]
