from web3 import Web3

# ---------------- helpers ----------------
def strip0x(s: str) -> str:
    return s[2:] if isinstance(s, str) and s[:2].lower() == "0x" else s

def to_addr(x):
    """Checksum an address; raises ValueError on anything that isn't 20 hex bytes."""
    if x is None: return None
    s = str(x).strip()
    if len(strip0x(s)) != 40:
        raise ValueError(f"not an address: {x!r}")
    return Web3.to_checksum_address("0x" + strip0x(s))

def hex_to_int(x):
    if x is None: return None
    if isinstance(x, int): return x
    if isinstance(x, bytes): return int.from_bytes(x, "big")
    s = str(x)
    return int(s, 16) if s.startswith("0x") else int(s)

def abi_signature(entry: dict) -> str:
    """Canonical `Name(type,...)` for an ABI event or function entry; tuples expand to their components."""
    def canon(inp):
        t = inp.get("type", "")
        if t.startswith("tuple"):
            inner = ",".join(canon(c) for c in inp.get("components") or [])
            return f"({inner}){t[len('tuple'):]}"
        return t
    return f"{entry.get('name', '')}(" + ",".join(canon(i) for i in entry.get("inputs") or []) + ")"

def event_topic(signature: str) -> str:
    return "0x" + Web3.keccak(text=signature).hex().removeprefix("0x")

def method_selector(signature: str) -> str:
    """First 4 bytes of keccak(signature), 0x-prefixed."""
    return event_topic(signature)[:10]
