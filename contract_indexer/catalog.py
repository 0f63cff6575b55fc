# catalog.py
"""
Type catalog for one source document.

Struct definitions live in a name-keyed arena; TypeRefs point at structs by
name only, so mutually referential structs can be registered in any order and
checked for containment cycles once the whole catalog is assembled.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .errors import (
    CatalogError, CyclicStruct, DuplicateStruct, UnknownFieldType, UnknownType,
)

IDENT_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*(\.[A-Za-z_$][A-Za-z0-9_$]*)*$")

BOOL, UINT, INT, ADDRESS, FIXED_BYTES, BYTES, STRING = (
    "bool", "uint", "int", "address", "fixed_bytes", "bytes", "string",
)
DYNAMIC_KINDS = (BYTES, STRING)


# ---------- type refs ----------
@dataclass(frozen=True)
class Elementary:
    kind: str
    bits: Optional[int] = None

    @property
    def name(self) -> str:
        if self.kind in (UINT, INT):
            return f"{self.kind}{self.bits}"
        if self.kind == FIXED_BYTES:
            return f"bytes{self.bits // 8}"
        return self.kind

    @property
    def size(self) -> int:
        if self.kind == BOOL:
            return 1
        if self.kind == ADDRESS:
            return 20
        if self.kind in DYNAMIC_KINDS:
            return 32
        return self.bits // 8

    def is_valid(self) -> bool:
        if self.kind in (BOOL, ADDRESS, BYTES, STRING):
            return True
        if self.kind in (UINT, INT):
            return self.bits is not None and 8 <= self.bits <= 256 and self.bits % 8 == 0
        if self.kind == FIXED_BYTES:
            return self.bits is not None and 8 <= self.bits <= 256 and self.bits % 8 == 0
        return False


@dataclass(frozen=True)
class FixedArray:
    element: "TypeRef"
    length: int


@dataclass(frozen=True)
class DynamicArray:
    element: "TypeRef"


@dataclass(frozen=True)
class Mapping:
    key: "TypeRef"
    value: "TypeRef"


@dataclass(frozen=True)
class StructRef:
    name: str


TypeRef = Union[Elementary, FixedArray, DynamicArray, Mapping, StructRef]


@dataclass(frozen=True)
class StructDef:
    name: str
    fields: Tuple[Tuple[str, TypeRef], ...]


def parse_elementary(name: str) -> Optional[Elementary]:
    """Map a solidity elementary type name to an Elementary, or None."""
    n = " ".join(name.split())
    if n == "bool":
        return Elementary(BOOL, 8)
    if n in ("address", "address payable"):
        return Elementary(ADDRESS, 160)
    if n in ("uint", "int"):
        return Elementary(n, 256)
    if n == "byte":
        return Elementary(FIXED_BYTES, 8)
    if n == "bytes":
        return Elementary(BYTES)
    if n == "string":
        return Elementary(STRING)
    m = re.fullmatch(r"(u?int)(\d+)", n)
    if m:
        t = Elementary(m.group(1), int(m.group(2)))
        return t if t.is_valid() else None
    m = re.fullmatch(r"bytes(\d+)", n)
    if m:
        t = Elementary(FIXED_BYTES, int(m.group(1)) * 8)
        return t if t.is_valid() else None
    return None


def enum_type(member_count: int) -> Elementary:
    # smallest uint holding every member index
    nbytes = 1
    while member_count > 256 ** nbytes:
        nbytes += 1
    return Elementary(UINT, nbytes * 8)


# ---------- catalog ----------
class TypeCatalog:
    def __init__(self):
        self._structs: Dict[str, StructDef] = {}
        self._aliases: Dict[str, TypeRef] = {}
        self._resolved: Dict[str, StructDef] = {}
        self.finalized = False

    def __contains__(self, name: str) -> bool:
        return name in self._structs or name in self._aliases

    @property
    def struct_names(self) -> List[str]:
        return list(self._structs)

    def register_struct(self, name: str, fields: Sequence[Tuple[str, TypeRef]]) -> StructDef:
        if name in self:
            raise DuplicateStruct(name)
        for field_name, type_ref in fields:
            bad = _first_invalid_leaf(type_ref)
            if bad is not None:
                raise UnknownFieldType(name, field_name, bad)
        sdef = StructDef(name, tuple(fields))
        self._structs[name] = sdef
        self.finalized = False
        return sdef

    def register_alias(self, name: str, type_ref: TypeRef) -> None:
        """Enums, user-defined value types and contract names resolve to an elementary type."""
        if name in self:
            raise CatalogError(f"type name {name!r} defined twice")
        self._aliases[name] = type_ref
        self.finalized = False

    def resolve_type_ref(self, name: str) -> TypeRef:
        elem = parse_elementary(name)
        if elem is not None:
            return elem
        hit = self._lookup(name)
        if hit is None:
            raise UnknownType(name)
        return hit

    def normalize(self, type_ref: TypeRef) -> TypeRef:
        """Replace alias references with their targets and qualify struct names."""
        if isinstance(type_ref, Elementary):
            return type_ref
        if isinstance(type_ref, FixedArray):
            return FixedArray(self.normalize(type_ref.element), type_ref.length)
        if isinstance(type_ref, DynamicArray):
            return DynamicArray(self.normalize(type_ref.element))
        if isinstance(type_ref, Mapping):
            return Mapping(self.normalize(type_ref.key), self.normalize(type_ref.value))
        return self.resolve_type_ref(type_ref.name)

    def struct(self, name: str) -> StructDef:
        if not self.finalized:
            self.finalize()
        try:
            return self._resolved[name]
        except KeyError:
            raise UnknownType(name) from None

    def finalize(self) -> None:
        """Resolve every struct field and reject containment cycles."""
        resolved = {}
        for sdef in self._structs.values():
            fields = []
            for field_name, type_ref in sdef.fields:
                try:
                    fields.append((field_name, self.normalize(type_ref)))
                except UnknownType as e:
                    raise UnknownFieldType(sdef.name, field_name, e.name) from None
            resolved[sdef.name] = StructDef(sdef.name, tuple(fields))
        _check_cycles(resolved)
        self._resolved = resolved
        self.finalized = True

    def _lookup(self, name: str) -> Optional[TypeRef]:
        if name in self._structs:
            return StructRef(name)
        if name in self._aliases:
            return self._aliases[name]
        if "." in name:
            return self._lookup(name.rsplit(".", 1)[1])
        return None


def _first_invalid_leaf(type_ref: TypeRef) -> Optional[str]:
    if isinstance(type_ref, Elementary):
        return None if type_ref.is_valid() else type_ref.name
    if isinstance(type_ref, StructRef):
        return None if IDENT_RE.match(type_ref.name) else type_ref.name
    if isinstance(type_ref, (FixedArray, DynamicArray)):
        return _first_invalid_leaf(type_ref.element)
    return _first_invalid_leaf(type_ref.key) or _first_invalid_leaf(type_ref.value)


def _contained(type_ref: TypeRef) -> List[str]:
    # mappings and dynamic arrays sit behind a base slot, they don't embed their element
    if isinstance(type_ref, StructRef):
        return [type_ref.name]
    if isinstance(type_ref, FixedArray):
        return _contained(type_ref.element)
    return []


def _check_cycles(structs: Dict[str, StructDef]) -> None:
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in structs}
    stack: List[str] = []

    def visit(name: str):
        color[name] = GREY
        stack.append(name)
        for _, type_ref in structs[name].fields:
            for child in _contained(type_ref):
                if color[child] == GREY:
                    raise CyclicStruct(stack[stack.index(child):] + [child])
                if color[child] == WHITE:
                    visit(child)
        stack.pop()
        color[name] = BLACK

    for name in structs:
        if color[name] == WHITE:
            visit(name)
