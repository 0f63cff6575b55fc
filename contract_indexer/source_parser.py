# source_parser.py
"""
Declaration-level Solidity parser.

Only what storage layout needs is extracted: contract definitions with their
inheritance lists, state variables, structs, enums, user-defined value types
and constants. Function bodies are skipped; constant expressions and array
lengths are kept as tokens and evaluated once the whole unit is known.

Explorer sources come in three shapes: a single flattened file, a JSON object
of {path: {"content": ...}}, or a standard-json input wrapped in double braces.
"""
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .catalog import (
    ADDRESS, FIXED_BYTES, UINT, DynamicArray, Elementary, FixedArray, Mapping, StructRef,
    TypeCatalog, TypeRef, enum_type, parse_elementary,
)
from .errors import ParseError
from .layout import StateVariableDecl

logger = logging.getLogger(__name__)

TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<comment>//[^\n]*|/\*.*?\*/)
  | (?P<string>"(?:\\.|[^"\\\n])*"|'(?:\\.|[^'\\\n])*')
  | (?P<number>0[xX][0-9a-fA-F_]+|\d[\d_]*(?:\.\d+)?(?:[eE]\d+)?)
  | (?P<ident>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<op>=>|\*\*|[{}()\[\];,.=<>!&|^~+\-*/%?:@])
""", re.S | re.X)
IDENT_TOKEN_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")

CALLABLES = {"function", "modifier", "constructor", "fallback", "receive"}
DECL_SKIPS = {"event", "error", "using", "pragma", "import"}
VAR_MODIFIERS = {"public", "private", "internal", "external", "constant",
                 "immutable", "override", "virtual", "transient"}
VISIBILITIES = {"public", "private", "internal", "external"}
FUNCTION_WORDS = VAR_MODIFIERS | {"pure", "view", "payable", "returns"}

# catalog prefix for file-level declarations shadowed by a contract-level one
FILE_PREFIX = "$file."


# ---------- parsed shapes ----------
@dataclass
class VarDef:
    name: str
    type_ref: TypeRef
    visibility: str = "internal"
    constant: bool = False
    immutable: bool = False
    transient: bool = False


@dataclass(frozen=True)
class ArrayLength:
    """A fixed-array length as written, with the contract it was written in."""
    expr: Tuple[str, ...]
    scope: Optional[str] = None

    def __str__(self) -> str:
        return " ".join(self.expr)


@dataclass
class Scope:
    structs: List[Tuple[str, List[Tuple[str, TypeRef]]]] = field(default_factory=list)
    enums: List[Tuple[str, int]] = field(default_factory=list)
    value_types: List[Tuple[str, TypeRef]] = field(default_factory=list)
    constants: Dict[str, List[str]] = field(default_factory=dict)  # name -> expression tokens


@dataclass
class ContractDef(Scope):
    name: str = ""
    kind: str = "contract"
    bases: List[str] = field(default_factory=list)
    variables: List[VarDef] = field(default_factory=list)


@dataclass
class SourceUnit(Scope):
    contracts: Dict[str, ContractDef] = field(default_factory=dict)


@dataclass
class ParsedSource:
    contract_name: str
    catalog: TypeCatalog
    declarations: List[StateVariableDecl]


# ---------- tokenizer ----------
def tokenize(text: str) -> List[Tuple[str, str]]:
    tokens = []
    pos = 0
    while pos < len(text):
        m = TOKEN_RE.match(text, pos)
        if not m:
            line = text.count("\n", 0, pos) + 1
            raise ParseError(f"unexpected character {text[pos]!r} on line {line}")
        kind = m.lastgroup
        if kind not in ("ws", "comment"):
            tokens.append((kind, m.group()))
        pos = m.end()
    return tokens


def parse_int(literal: str) -> int:
    s = literal.replace("_", "")
    if s[:2].lower() == "0x":
        return int(s, 16)
    m = re.fullmatch(r"(\d+)[eE](\d+)", s)
    if m:
        return int(m.group(1)) * 10 ** int(m.group(2))
    if not s.isdigit():
        raise ParseError(f"not an integer literal: {literal}")
    return int(s)


# ---------- parser ----------
class _Parser:
    def __init__(self, tokens: List[Tuple[str, str]], unit: SourceUnit):
        self.toks = tokens
        self.pos = 0
        self.unit = unit
        self.scope: Optional[ContractDef] = None

    # token helpers
    def peek(self, ahead: int = 0) -> Optional[str]:
        i = self.pos + ahead
        return self.toks[i][1] if i < len(self.toks) else None

    def next(self) -> str:
        if self.pos >= len(self.toks):
            raise ParseError("unexpected end of source")
        tok = self.toks[self.pos][1]
        self.pos += 1
        return tok

    def expect(self, value: str) -> str:
        tok = self.next()
        if tok != value:
            raise ParseError(f"expected {value!r}, got {tok!r}")
        return tok

    def ident(self) -> str:
        if self.pos >= len(self.toks) or self.toks[self.pos][0] != "ident":
            raise ParseError(f"expected identifier, got {self.peek()!r}")
        return self.next()

    def skip_balanced(self):
        """Skip a {...}, (...) or [...] group starting at the current token."""
        closing = {"{": "}", "(": ")", "[": "]"}
        stack = [closing[self.next()]]
        while stack:
            tok = self.next()
            if tok in closing:
                stack.append(closing[tok])
            elif tok == stack[-1]:
                stack.pop()

    def collect_until(self, stops) -> List[str]:
        """Collect tokens at nesting depth 0 until one of `stops` (not consumed)."""
        out = []
        while self.peek() not in stops:
            if self.peek() is None:
                raise ParseError(f"expected one of {sorted(stops)}")
            if self.peek() in ("(", "[", "{"):
                start = self.pos
                self.skip_balanced()
                out.extend(t[1] for t in self.toks[start:self.pos])
            else:
                out.append(self.next())
        return out

    # top level
    def parse_unit(self):
        while self.peek() is not None:
            tok = self.peek()
            if tok in DECL_SKIPS:
                self.collect_until({";"})
                self.next()
            elif tok == "abstract":
                self.next()
                self.expect("contract")
                self.parse_contract("abstract contract")
            elif tok in ("contract", "interface", "library"):
                self.next()
                self.parse_contract(tok)
            elif tok == ";":
                self.next()
            else:
                self.parse_member(self.unit)

    def parse_contract(self, kind: str):
        name = self.ident()
        bases = []
        if self.peek() == "is":
            self.next()
            while True:
                bases.append(self.path())
                if self.peek() == "(":
                    self.skip_balanced()
                if self.peek() != ",":
                    break
                self.next()
        self.expect("{")
        contract = ContractDef(name=name, kind=kind, bases=bases)
        self.scope = contract
        while self.peek() != "}":
            if self.peek() is None:
                raise ParseError(f"unterminated contract {name}")
            self.parse_member(contract)
        self.next()
        self.scope = None
        if name in self.unit.contracts:
            logger.debug("[parse] contract %s defined twice, keeping the first", name)
        else:
            self.unit.contracts[name] = contract

    def parse_member(self, scope: Scope):
        tok = self.peek()
        if tok in CALLABLES and not (tok == "function" and self.function_type_ahead()):
            self.next()
            self.collect_until({"{", ";"})
            if self.peek() == "{":
                self.skip_balanced()
            else:
                self.next()
        elif tok in DECL_SKIPS:
            self.collect_until({";"})
            self.next()
        elif tok == "struct":
            self.next()
            scope.structs.append(self.parse_struct())
        elif tok == "enum":
            self.next()
            name = self.ident()
            self.expect("{")
            members = [t for t in self.collect_until({"}"}) if t != ","]
            self.next()
            scope.enums.append((name, len(members)))
        elif tok == "type" and self.peek(2) == "is":
            self.next()
            name = self.ident()
            self.expect("is")
            scope.value_types.append((name, self.parse_type()))
            self.expect(";")
        else:
            var = self.parse_variable()
            if isinstance(scope, ContractDef):
                scope.variables.append(var)
            elif not var.constant:
                raise ParseError(f"file-level variable {var.name} must be constant")

    def function_type_ahead(self) -> bool:
        """True when `function (...)` starts a function-typed state variable, not a definition."""
        if self.peek(1) != "(":
            return False
        start = self.pos
        try:
            self.next()
            head = self.collect_until({"{", ";", "="})
            end = self.peek()
        finally:
            self.pos = start
        if end == "=":
            return True
        last = head[-1] if head else ""
        return end == ";" and bool(IDENT_TOKEN_RE.fullmatch(last)) and last not in FUNCTION_WORDS

    def parse_struct(self) -> Tuple[str, List[Tuple[str, TypeRef]]]:
        name = self.ident()
        self.expect("{")
        fields = []
        while self.peek() != "}":
            type_ref = self.parse_type()
            fields.append((self.ident(), type_ref))
            self.expect(";")
        self.next()
        return name, fields

    def parse_variable(self) -> VarDef:
        type_ref = self.parse_type()
        var = VarDef(name="", type_ref=type_ref)
        while self.peek() in VAR_MODIFIERS:
            mod = self.next()
            if mod in VISIBILITIES:
                var.visibility = mod
            elif mod == "constant":
                var.constant = True
            elif mod == "immutable":
                var.immutable = True
            elif mod == "transient":
                var.transient = True
            elif mod == "override" and self.peek() == "(":
                self.skip_balanced()
        var.name = self.ident()
        if self.peek() == "=":
            self.next()
            expr = self.collect_until({";"})
            if var.constant:
                (self.scope or self.unit).constants[var.name] = expr
        self.expect(";")
        return var

    def path(self) -> str:
        parts = [self.ident()]
        while self.peek() == "." and self.pos + 1 < len(self.toks) and self.toks[self.pos + 1][0] == "ident":
            self.next()
            parts.append(self.next())
        return ".".join(parts)

    def parse_type(self) -> TypeRef:
        tok = self.peek()
        if tok == "mapping":
            self.next()
            self.expect("(")
            key = self.parse_type()
            if self.peek() != "=>":
                self.ident()
            self.expect("=>")
            value = self.parse_type()
            if self.peek() != ")":
                self.ident()
            self.expect(")")
            type_ref: TypeRef = Mapping(key, value)
        elif tok == "function":
            type_ref = self.parse_function_type()
        else:
            name = self.path()
            if name == "address" and self.peek() == "payable":
                self.next()
            type_ref = parse_elementary(name) or StructRef(name)

        while self.peek() == "[":
            self.next()
            if self.peek() == "]":
                self.next()
                type_ref = DynamicArray(type_ref)
                continue
            expr = self.collect_until({"]"})
            self.next()
            owner = self.scope.name if self.scope is not None else None
            type_ref = FixedArray(type_ref, ArrayLength(tuple(expr), owner))
        return type_ref

    def parse_function_type(self) -> TypeRef:
        # external function pointers are stored as address + selector, internal ones as a code offset
        self.expect("function")
        self.skip_balanced()
        external = False
        while self.peek() in ("external", "internal", "pure", "view", "payable"):
            external = self.next() == "external" or external
        if self.peek() == "returns":
            self.next()
            self.skip_balanced()
        return Elementary(FIXED_BYTES, 192) if external else Elementary(UINT, 64)


# ---------- constants ----------
class ConstantTable:
    """
    Integer constants of a whole source unit, evaluated on demand.

    Expressions support integer literals, other constants (plain or qualified
    as `Lib.N`), + - * / % ** and parentheses. A plain name is looked up in
    the declaring contract and its bases, then at file level, then in any
    other contract of the unit.
    """

    def __init__(self, unit: SourceUnit):
        self.unit = unit
        self._values: Dict[Tuple[Optional[str], str], int] = {}
        self._pending = set()

    def array_length(self, length: ArrayLength) -> int:
        try:
            value, rest = self._sum(list(length.expr), length.scope)
        except (ParseError, IndexError, ZeroDivisionError, ValueError) as e:
            raise ParseError(f"cannot evaluate array length {length}: {e}") from None
        if rest or value < 0:
            raise ParseError(f"cannot evaluate array length {length}")
        return value

    def value(self, parts: List[str], scope: Optional[str]) -> int:
        name = parts[-1]
        if len(parts) > 1 and parts[-2] in self.unit.contracts:
            owners = [parts[-2]]
        else:
            owners = self._search_order(scope)
        for owner in owners:
            table = self.unit.constants if owner is None else self.unit.contracts[owner].constants
            if name in table:
                return self._evaluate(owner, name, table[name])
        raise ParseError(f"unknown constant {'.'.join(parts)}")

    def _search_order(self, scope: Optional[str]) -> List[Optional[str]]:
        order: List[Optional[str]] = []
        if scope is not None:
            order.extend(_bases_of(self.unit, scope))
        order.append(None)
        order.extend(n for n in self.unit.contracts if n not in order)
        return order

    def _evaluate(self, owner: Optional[str], name: str, expr: List[str]) -> int:
        key = (owner, name)
        if key not in self._values:
            if key in self._pending:
                raise ParseError(f"constant {name} depends on itself")
            self._pending.add(key)
            try:
                value, rest = self._sum(list(expr), owner)
            finally:
                self._pending.discard(key)
            if rest:
                raise ParseError(f"constant {name} is not an integer expression")
            self._values[key] = value
        return self._values[key]

    def _sum(self, toks, scope):
        value, toks = self._product(toks, scope)
        while toks and toks[0] in ("+", "-"):
            op = toks.pop(0)
            rhs, toks = self._product(toks, scope)
            value = value + rhs if op == "+" else value - rhs
        return value, toks

    def _product(self, toks, scope):
        value, toks = self._power(toks, scope)
        while toks and toks[0] in ("*", "/", "%"):
            op = toks.pop(0)
            rhs, toks = self._power(toks, scope)
            if op == "*":
                value *= rhs
            elif op == "/":
                value //= rhs
            else:
                value %= rhs
        return value, toks

    def _power(self, toks, scope):
        base, toks = self._atom(toks, scope)
        if toks and toks[0] == "**":
            toks.pop(0)
            exp, toks = self._power(toks, scope)
            return base ** exp, toks
        return base, toks

    def _atom(self, toks, scope):
        tok = toks.pop(0)
        if tok == "(":
            value, toks = self._sum(toks, scope)
            if not toks or toks.pop(0) != ")":
                raise ParseError("unbalanced parentheses")
            return value, toks
        if tok[0].isdigit():
            return parse_int(tok), toks
        parts = [tok]
        while len(toks) >= 2 and toks[0] == ".":
            toks.pop(0)
            parts.append(toks.pop(0))
        return self.value(parts, scope), toks


# ---------- sources ----------
def split_sources(source_code: str) -> List[Tuple[str, str]]:
    """Return (path, text) pairs for an explorer SourceCode field."""
    s = (source_code or "").strip()
    if not s:
        raise ParseError("empty source code")
    if s.startswith("{{") and s.endswith("}}"):
        s = s[1:-1]
    if not s.startswith("{"):
        return [("<source>", s)]
    try:
        data = json.loads(s)
    except json.JSONDecodeError as e:
        raise ParseError(f"bad multi-file source: {e}") from None
    files = data.get("sources", data)
    out = []
    for path, entry in files.items():
        content = entry.get("content") if isinstance(entry, dict) else entry
        if isinstance(content, str):
            out.append((path, content))
    if not out:
        raise ParseError("multi-file source has no contents")
    return out


def parse_unit(source_code: str) -> SourceUnit:
    unit = SourceUnit()
    for path, text in split_sources(source_code):
        try:
            _Parser(tokenize(text), unit).parse_unit()
        except ParseError as e:
            raise ParseError(f"{path}: {e}") from None
    return unit


def linearize(unit: SourceUnit, name: str) -> List[str]:
    """C3 linearization, most derived first (solidity lists bases most-base first)."""
    memo: Dict[str, List[str]] = {}

    def lin(n: str, trail: Tuple[str, ...]) -> List[str]:
        if n in memo:
            return memo[n]
        if n in trail:
            raise ParseError(f"inheritance cycle through {n}")
        if n not in unit.contracts:
            raise ParseError(f"base contract {n} not found in source")
        bases = [b.rsplit(".", 1)[-1] for b in unit.contracts[n].bases]
        seqs = [lin(b, trail + (n,)) for b in reversed(bases)] + [list(reversed(bases))]
        memo[n] = [n] + _merge([s[:] for s in seqs if s], n)
        return memo[n]

    return lin(name, ())


def _merge(seqs: List[List[str]], owner: str) -> List[str]:
    out = []
    while seqs:
        for seq in seqs:
            head = seq[0]
            if not any(head in s[1:] for s in seqs):
                break
        else:
            raise ParseError(f"linearization of inheritance graph impossible for {owner}")
        out.append(head)
        seqs = [[x for x in s if x != head] for s in seqs]
        seqs = [s for s in seqs if s]
    return out


def _bases_of(unit: SourceUnit, name: str) -> List[str]:
    # contracts outside the target chain may have broken inheritance; they only see themselves then
    try:
        return linearize(unit, name)
    except ParseError as e:
        logger.debug("[parse] %s: %s", name, e)
        return [name]


def pick_contract(unit: SourceUnit, contract_name: Optional[str] = None) -> str:
    if contract_name and contract_name in unit.contracts:
        return contract_name
    deployable = [c.name for c in unit.contracts.values() if c.kind in ("contract", "abstract contract")]
    if deployable:
        if contract_name:
            logger.warning("[parse] contract %s not in source, using %s", contract_name, deployable[-1])
        return deployable[-1]
    raise ParseError("no contract definition in source")


# ---------- catalog ----------
def _local_names(scope: Scope) -> List[str]:
    return [n for n, _ in scope.structs] + [n for n, _ in scope.enums] + [n for n, _ in scope.value_types]


def _scope_types(scope: Scope, with_variables: bool = False) -> Iterator[TypeRef]:
    for _, fields in scope.structs:
        for _, type_ref in fields:
            yield type_ref
    for _, type_ref in scope.value_types:
        yield type_ref
    if with_variables:
        for var in scope.variables:
            yield var.type_ref


def _qualifiers(type_ref: TypeRef) -> Iterator[str]:
    """Contract names used to qualify struct/enum references (`Lib` in `Lib.Data`)."""
    if isinstance(type_ref, StructRef):
        if "." in type_ref.name:
            yield type_ref.name.split(".", 1)[0]
    elif isinstance(type_ref, (FixedArray, DynamicArray)):
        yield from _qualifiers(type_ref.element)
    elif isinstance(type_ref, Mapping):
        yield from _qualifiers(type_ref.key)
        yield from _qualifiers(type_ref.value)


def reachable_contracts(unit: SourceUnit, chain: List[str]) -> List[str]:
    """Contracts outside `chain` whose declarations the chain (or file level) can name."""
    found = set()
    pending: List[Tuple[Scope, bool]] = [(unit, False)] + [(unit.contracts[n], True) for n in chain]
    while pending:
        scope, with_variables = pending.pop()
        for type_ref in _scope_types(scope, with_variables):
            for head in _qualifiers(type_ref):
                if head not in unit.contracts or head in chain or head in found:
                    continue
                for name in _bases_of(unit, head):
                    if name not in chain and name not in found:
                        found.add(name)
                        pending.append((unit.contracts[name], False))
    return [n for n in unit.contracts if n in found]


def _renames(unit: SourceUnit, name: str, chain: List[str]) -> Dict[str, str]:
    """Catalog names for everything `name` sees unqualified: its own and its bases' declarations."""
    rename = {}
    for owner in reversed(_bases_of(unit, name)):
        prefix = "" if owner in chain else owner + "."
        for local in _local_names(unit.contracts[owner]):
            rename[local] = prefix + local
    return rename


def settle(type_ref: TypeRef, consts: ConstantTable, rename: Optional[Dict[str, str]] = None) -> TypeRef:
    """Evaluate pending array lengths and map local struct/enum names to catalog names."""
    if isinstance(type_ref, StructRef):
        return StructRef(rename.get(type_ref.name, type_ref.name)) if rename else type_ref
    if isinstance(type_ref, FixedArray):
        length = type_ref.length
        if isinstance(length, ArrayLength):
            length = consts.array_length(length)
        return FixedArray(settle(type_ref.element, consts, rename), length)
    if isinstance(type_ref, DynamicArray):
        return DynamicArray(settle(type_ref.element, consts, rename))
    if isinstance(type_ref, Mapping):
        return Mapping(settle(type_ref.key, consts, rename), settle(type_ref.value, consts, rename))
    return type_ref


def _register_scope(catalog: TypeCatalog, scope: Scope, consts: ConstantTable,
                    rename: Optional[Dict[str, str]] = None):
    rename = rename or {}
    for name, fields in scope.structs:
        catalog.register_struct(rename.get(name, name), [(f, settle(t, consts, rename)) for f, t in fields])
    for name, count in scope.enums:
        catalog.register_alias(rename.get(name, name), enum_type(count))
    for name, type_ref in scope.value_types:
        catalog.register_alias(rename.get(name, name), settle(type_ref, consts, rename))


def build_catalog(unit: SourceUnit, chain: List[str], consts: Optional[ConstantTable] = None) -> TypeCatalog:
    """
    Register everything the contracts in `chain` can name, then finalize.

    Chain declarations are registered under their plain names; a file-level
    declaration with the same name is shadowed and kept under `$file.`.
    Contracts outside the chain are registered under `Contract.` only when
    the chain reaches them through a qualified name, with their unqualified
    references resolved against their own bases.
    """
    consts = consts or ConstantTable(unit)
    catalog = TypeCatalog()
    in_chain = set()
    for name in reversed(chain):
        scope = unit.contracts[name]
        _register_scope(catalog, scope, consts)
        in_chain.update(_local_names(scope))

    shadowed = {n: FILE_PREFIX + n for n in _local_names(unit) if n in in_chain}
    if shadowed:
        logger.debug("[parse] file-level %s shadowed by contract declarations", ", ".join(sorted(shadowed)))
    _register_scope(catalog, unit, consts, shadowed)

    for name in reachable_contracts(unit, chain):
        _register_scope(catalog, unit.contracts[name], consts, _renames(unit, name, chain))
    for name in unit.contracts:
        if name not in catalog:
            catalog.register_alias(name, Elementary(ADDRESS, 160))
    catalog.finalize()
    return catalog


def parse_contract(source_code: str, contract_name: Optional[str] = None) -> ParsedSource:
    unit = parse_unit(source_code)
    name = pick_contract(unit, contract_name)
    chain = linearize(unit, name)
    consts = ConstantTable(unit)
    catalog = build_catalog(unit, chain, consts)

    decls = []
    for owner in reversed(chain):
        for var in unit.contracts[owner].variables:
            if var.transient:
                continue
            decls.append(StateVariableDecl(
                index=len(decls),
                name=var.name,
                type_ref=settle(var.type_ref, consts),
                visibility=var.visibility,
                constant=var.constant,
                immutable=var.immutable,
            ))
    logger.debug("[parse] %s: %d declarations across %d contracts", name, len(decls), len(chain))
    return ParsedSource(contract_name=name, catalog=catalog, declarations=decls)
