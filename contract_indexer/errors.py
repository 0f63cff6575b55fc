# errors.py
from typing import Optional


class ContractIndexerError(Exception):
    """Base class for everything raised by the onboarding pipeline."""


# ---------- source / catalog ----------
class ParseError(ContractIndexerError):
    """Source could not be turned into declarations."""


class CatalogError(ParseError):
    pass


class UnknownType(CatalogError):
    def __init__(self, name: str):
        super().__init__(f"unknown type {name!r}")
        self.name = name


class UnknownFieldType(CatalogError):
    def __init__(self, struct: str, field: str, type_name: str):
        super().__init__(f"struct {struct}: field {field!r} has unknown type {type_name!r}")
        self.struct = struct
        self.field = field
        self.type_name = type_name


class DuplicateStruct(CatalogError):
    def __init__(self, name: str):
        super().__init__(f"struct {name!r} defined twice")
        self.name = name


class CyclicStruct(CatalogError):
    def __init__(self, path):
        self.path = list(path)
        super().__init__("struct contains itself: " + " -> ".join(self.path))


# ---------- metadata source ----------
class MetadataFetchError(ContractIndexerError):
    retryable = False


class NotFound(MetadataFetchError):
    pass


class TransientError(MetadataFetchError):
    retryable = True


# ---------- persistence ----------
class PersistenceError(ContractIndexerError):
    pass


# ---------- backfill ----------
class BackfillFailed(ContractIndexerError):
    def __init__(self, exit_status: Optional[int], detail: str = ""):
        msg = f"backfill exited with status {exit_status}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.exit_status = exit_status
