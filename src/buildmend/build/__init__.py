from buildmend.build.generators import GeneratorOutcome, GeneratorRunner, extract_migration_info
from buildmend.build.runner import BuildRunner, run_shell

__all__ = [
    "BuildRunner",
    "GeneratorOutcome",
    "GeneratorRunner",
    "extract_migration_info",
    "run_shell",
]
