from .factory import BackendKind, RegistryKind

__all__ = ["BackendKind", "RegistryKind"]
