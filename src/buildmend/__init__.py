"""buildmend: build, classify, patch and rebuild until an upgraded project compiles."""

from buildmend._version import __version__
from buildmend.core.models import BuildError, ErrorCategory, FileChange, FixResult, LoopResult

__all__ = [
    "__version__",
    "BuildError",
    "ErrorCategory",
    "FileChange",
    "FixResult",
    "LoopResult",
]
