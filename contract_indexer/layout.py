# layout.py
"""
Storage layout resolver.

Replays the compiler's storage allocation over declared state variables:
variables are assigned in declaration order to 32-byte slots, elementary
values pack tightly without straddling a slot boundary, and structs, fixed
arrays, mappings and dynamic arrays always start (and end) on a slot
boundary. Mappings and dynamic arrays get a single base slot; the slots of
their elements are derived from it at read time and are never enumerated
here.
"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from .catalog import (
    DynamicArray, Elementary, FixedArray, Mapping, StructRef, TypeCatalog, TypeRef,
)

logger = logging.getLogger(__name__)

SLOT_SIZE = 32


@dataclass(frozen=True)
class StateVariableDecl:
    index: int
    name: str
    type_ref: TypeRef
    visibility: str = "internal"
    constant: bool = False
    immutable: bool = False

    @property
    def in_storage(self) -> bool:
        return not (self.constant or self.immutable)


@dataclass(frozen=True)
class SlotAssignment:
    variable: str
    slot: int
    offset: int
    size: int
    signature: str
    is_base_slot: bool = False

    def shifted(self, base_slot: int, prefix: str) -> "SlotAssignment":
        return SlotAssignment(
            variable=prefix + self.variable,
            slot=base_slot + self.slot,
            offset=self.offset,
            size=self.size,
            signature=self.signature,
            is_base_slot=self.is_base_slot,
        )


class StorageLayoutResolver:
    def __init__(self, catalog: TypeCatalog):
        self.catalog = catalog
        self._struct_layouts: Dict[str, Tuple[List[SlotAssignment], int]] = {}

    def resolve(self, decls: Sequence[StateVariableDecl]) -> List[SlotAssignment]:
        if not self.catalog.finalized:
            self.catalog.finalize()
        members = [
            (d.name, self.catalog.normalize(d.type_ref))
            for d in sorted(decls, key=lambda d: d.index)
            if d.in_storage
        ]
        out, used = self._layout(members)
        logger.debug("[layout] %d assignments over %d slots", len(out), used)
        return out

    # ---------- sizing ----------
    def size_of(self, type_ref: TypeRef) -> int:
        """Bytes occupied by a value of this type when laid out in storage."""
        if isinstance(type_ref, Elementary):
            return type_ref.size
        return self.slots_of(type_ref) * SLOT_SIZE

    def slots_of(self, type_ref: TypeRef) -> int:
        if isinstance(type_ref, (Elementary, Mapping, DynamicArray)):
            return 1
        if isinstance(type_ref, StructRef):
            return self._struct_layout(type_ref.name)[1]
        element = type_ref.element
        if isinstance(element, Elementary):
            per_slot = SLOT_SIZE // element.size
            return -(-type_ref.length // per_slot)
        return type_ref.length * self.slots_of(element)

    # ---------- signatures ----------
    def signature(self, type_ref: TypeRef, _seen: Tuple[str, ...] = ()) -> str:
        if isinstance(type_ref, Elementary):
            return type_ref.name
        if isinstance(type_ref, FixedArray):
            return f"{self.signature(type_ref.element, _seen)}[{type_ref.length}]"
        if isinstance(type_ref, DynamicArray):
            return f"{self.signature(type_ref.element, _seen)}[]"
        if isinstance(type_ref, Mapping):
            key = self.signature(type_ref.key, _seen)
            value = self.signature(type_ref.value, _seen)
            return f"mapping({key}=>{value})"
        # a struct reachable from itself (through a mapping or dynamic array) renders by name
        if type_ref.name in _seen:
            return type_ref.name
        sdef = self.catalog.struct(type_ref.name)
        seen = _seen + (type_ref.name,)
        return "(" + ",".join(self.signature(t, seen) for _, t in sdef.fields) + ")"

    # ---------- allocation ----------
    def _struct_layout(self, name: str) -> Tuple[List[SlotAssignment], int]:
        if name not in self._struct_layouts:
            sdef = self.catalog.struct(name)
            out, used = self._layout(sdef.fields)
            self._struct_layouts[name] = (out, max(used, 1))
        return self._struct_layouts[name]

    def _layout(self, members: Sequence[Tuple[str, TypeRef]]) -> Tuple[List[SlotAssignment], int]:
        slot, offset = 0, 0
        out: List[SlotAssignment] = []

        for name, type_ref in members:
            if isinstance(type_ref, Elementary):
                size = type_ref.size
                if offset + size > SLOT_SIZE:
                    slot, offset = slot + 1, 0
                out.append(SlotAssignment(name, slot, offset, size, type_ref.name))
                offset += size
                continue

            if offset != 0:
                slot, offset = slot + 1, 0
            n = self.slots_of(type_ref)
            out.append(SlotAssignment(
                variable=name,
                slot=slot,
                offset=0,
                size=n * SLOT_SIZE,
                signature=self.signature(type_ref),
                is_base_slot=isinstance(type_ref, (Mapping, DynamicArray)),
            ))
            if isinstance(type_ref, StructRef):
                fields, _ = self._struct_layout(type_ref.name)
                out.extend(f.shifted(slot, name + ".") for f in fields)
            slot += n

        used = slot + (1 if offset > 0 else 0)
        return out, used


def resolve_layout(decls: Sequence[StateVariableDecl], catalog: TypeCatalog) -> List[SlotAssignment]:
    return StorageLayoutResolver(catalog).resolve(decls)
