"""Shared constant values for the wasmcraft compiler."""

WASM_MAGIC = b"\x00asm"
WASM_VERSION = 1

VALUE_TYPES = {
    0x7F: "i32",
    0x7E: "i64",
    0x7D: "f32",
    0x7C: "f64",
}
VALUE_TYPE_CODES = {name: code for code, name in VALUE_TYPES.items()}

WIDE_TYPES = ("i64", "f64")

FUNCREF = 0x70
EXTERNREF = 0x6F
FUNC_TYPE_FORM = 0x60
EMPTY_BLOCK_TYPE = 0x40

SECTION_NAMES = {
    0: "custom",
    1: "type",
    2: "import",
    3: "function",
    4: "table",
    5: "memory",
    6: "global",
    7: "export",
    8: "start",
    9: "element",
    10: "code",
    11: "data",
    12: "datacount",
}

# Non-custom sections must appear in this order.
SECTION_ORDER = [1, 2, 3, 4, 5, 6, 7, 8, 9, 12, 10, 11]

EXTERNAL_KINDS = {0: "func", 1: "table", 2: "memory", 3: "global"}
EXTERNAL_KIND_CODES = {name: code for code, name in EXTERNAL_KINDS.items()}

PAGE_SIZE = 65536
WORDS_PER_PAGE = PAGE_SIZE // 4
# Byte addresses must fit a scoreboard value.
MAX_PAGES = 32767
MAX_BLOCKS_PER_FUNCTION = 65535

INT32_MIN = -(1 << 31)
INT32_MAX = (1 << 31) - 1

OBJECTIVE = "wasm"
DEFAULT_NAMESPACE = "wasm"
DEFAULT_BUDGET = 32
DEFAULT_MAX_DEPTH = 256
DEFAULT_JOBS = 1
DEFAULT_MAX_COMMANDS = 65536
DISPATCH_LINEAR_LIMIT = 8

TRAP_CODES = {
    "unreachable": 1,
    "divide_by_zero": 2,
    "integer_overflow": 3,
    "out_of_bounds_memory_access": 4,
    "indirect_call_type_mismatch": 5,
    "undefined_element": 6,
    "uninitialized_element": 7,
    "call_stack_exhausted": 8,
    "invalid_conversion_to_integer": 9,
}

TRAP_MESSAGES = {
    "unreachable": "unreachable executed",
    "divide_by_zero": "integer divide by zero",
    "integer_overflow": "integer overflow",
    "out_of_bounds_memory_access": "out of bounds memory access",
    "indirect_call_type_mismatch": "indirect call type mismatch",
    "undefined_element": "undefined element",
    "uninitialized_element": "uninitialized element",
    "call_stack_exhausted": "call stack exhausted",
    "invalid_conversion_to_integer": "invalid conversion to integer",
}

# Single-byte opcodes from post-MVP proposals that are recognized but not
# representable on the target.
UNSUPPORTED_OPCODES = {
    0x06: ("exception-handling", "try"),
    0x07: ("exception-handling", "catch"),
    0x08: ("exception-handling", "throw"),
    0x09: ("exception-handling", "rethrow"),
    0x0A: ("exception-handling", "throw_ref"),
    0x12: ("tail-call", "return_call"),
    0x13: ("tail-call", "return_call_indirect"),
    0x14: ("function-references", "call_ref"),
    0x18: ("exception-handling", "delegate"),
    0x19: ("exception-handling", "catch_all"),
    0x1F: ("exception-handling", "try_table"),
    0x25: ("reference-types", "table.get"),
    0x26: ("reference-types", "table.set"),
    0xD0: ("reference-types", "ref.null"),
    0xD1: ("reference-types", "ref.is_null"),
    0xD2: ("reference-types", "ref.func"),
}

UNSUPPORTED_PREFIXES = {
    0xFC: "bulk-memory",
    0xFD: "simd",
    0xFE: "threads",
}

TURTLE_PALETTE = [
    "minecraft:air",
    "minecraft:stone",
    "minecraft:cobblestone",
    "minecraft:dirt",
    "minecraft:grass_block",
    "minecraft:oak_planks",
    "minecraft:glass",
    "minecraft:white_wool",
    "minecraft:red_wool",
    "minecraft:gold_block",
    "minecraft:diamond_block",
    "minecraft:redstone_block",
]

# Lower corner of the world region that holds the turtle clipboard.
TURTLE_CLIPBOARD = (0, 256, 0)
# Largest region a single fill or clone may touch.
MAX_FILL_VOLUME = 32768

MANIFEST_FILE = "manifest.json"
MANIFEST_FORMAT = "wasmcraft-manifest/1"
PACK_FORMAT = 48

KEY_FILE = "wasmcraft_private_key.pem"
PUB_FILE = "wasmcraft_public_key.pem"

__all__ = [
    "DEFAULT_BUDGET",
    "DEFAULT_JOBS",
    "DEFAULT_MAX_COMMANDS",
    "DEFAULT_MAX_DEPTH",
    "DEFAULT_NAMESPACE",
    "DISPATCH_LINEAR_LIMIT",
    "EMPTY_BLOCK_TYPE",
    "EXTERNAL_KINDS",
    "EXTERNAL_KIND_CODES",
    "EXTERNREF",
    "FUNCREF",
    "FUNC_TYPE_FORM",
    "INT32_MAX",
    "INT32_MIN",
    "KEY_FILE",
    "MANIFEST_FILE",
    "MANIFEST_FORMAT",
    "MAX_BLOCKS_PER_FUNCTION",
    "MAX_FILL_VOLUME",
    "MAX_PAGES",
    "OBJECTIVE",
    "PACK_FORMAT",
    "PAGE_SIZE",
    "PUB_FILE",
    "SECTION_NAMES",
    "SECTION_ORDER",
    "TRAP_CODES",
    "TRAP_MESSAGES",
    "TURTLE_CLIPBOARD",
    "TURTLE_PALETTE",
    "UNSUPPORTED_OPCODES",
    "UNSUPPORTED_PREFIXES",
    "VALUE_TYPES",
    "VALUE_TYPE_CODES",
    "WASM_MAGIC",
    "WASM_VERSION",
    "WIDE_TYPES",
    "WORDS_PER_PAGE",
]
