from maestro.state.artifacts import ArtifactStore
from maestro.state.store import StateStore
from maestro.state.vcs import GitVersionControl, NullVersionControl, VersionControl

__all__ = [
    "ArtifactStore",
    "GitVersionControl",
    "NullVersionControl",
    "StateStore",
    "VersionControl",
]
