from buildmend.fix.applier import PatchApplier
from buildmend.fix.backups import FileBackupSet
from buildmend.fix.base import FixContext, FixStrategy
from buildmend.fix.strategies import FixStrategyRegistry, default_strategies

__all__ = [
    "FileBackupSet",
    "FixContext",
    "FixStrategy",
    "FixStrategyRegistry",
    "PatchApplier",
    "default_strategies",
]
