from .filesystem import FilesystemStateStore
from .serialization import state_from_dict, state_to_dict

__all__ = ["FilesystemStateStore", "state_from_dict", "state_to_dict"]
