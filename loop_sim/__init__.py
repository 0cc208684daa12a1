# Makes this directory a package for easy imports

from .stores import InMemoryCarbStore, InMemoryDoseStore, InMemoryGlucoseStore
from .data_manager import DosingDecision, LoopDataManager
from .controller import LoopController, settings_from_profile

__all__ = [
    "InMemoryCarbStore",
    "InMemoryDoseStore",
    "InMemoryGlucoseStore",
    "DosingDecision",
    "LoopDataManager",
    "LoopController",
    "settings_from_profile",
]
