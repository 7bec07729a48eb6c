"""A simulator for the command subset emitted by the compiler.

The simulator executes command functions the way the game's function
interpreter does: one command after another, ``return run function`` as a
tail invocation that replaces the running function, plain ``function`` as a
nested invocation, and ``$`` macro lines expanded from the compound passed
with ``function ... with storage``.  Execution is iterative over an explicit
frame stack, so deep chains of tail calls never touch the Python stack.

Scoreboard arithmetic mirrors the game: 32-bit wrapping ``+= -= *=``,
floored ``/=`` and ``%=`` that leave the target unchanged for a zero divisor,
``<`` and ``>`` as min and max, ``><`` as swap.

With ``strict`` enabled (the default) reading an unset score or addressing a
missing storage path raises :class:`CommandError` instead of failing
silently, which surfaces compiler bugs at the command that exposes them.
"""
from __future__ import annotations

import itertools
import json
import logging
import math
import random
import re
import struct
from collections import Counter
from dataclasses import dataclass, field

from ..constants import DEFAULT_MAX_COMMANDS, MAX_FILL_VOLUME, OBJECTIVE
from .lir import split64, wrap32

logger = logging.getLogger(__name__)

DEFAULT_MAX_TICKS = 100000
TICKS_PER_UNIT = {"t": 1, "s": 20, "d": 24000}

_MACRO = re.compile(r"\$\(([A-Za-z0-9_]+)\)")
_PATH_TOKEN = re.compile(r'\[(-?\d+)\]|\.?([A-Za-z0-9_\-+]+)|\.?"((?:[^"\\]|\\.)*)"')
_INT_TOKEN = re.compile(r"[-+]?\d+[bBsSlL]?$")
_FLOAT_TOKEN = re.compile(r"[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?[fFdD]?$")
_UNQUOTED = re.compile(r"[A-Za-z0-9_\-.+]+")
_MISSING = object()


class CommandError(Exception):
    """A command the simulator cannot execute, or one that exposes a bug."""


class UnsetScoreError(CommandError):
    def __init__(self, holder, objective):
        self.holder = holder
        self.objective = objective
        super().__init__(f"score {holder} {objective} is not set")


class CommandLimitExceeded(CommandError):
    """One top-level invocation ran more commands than allowed."""

    def __init__(self, name, limit):
        self.name = name
        self.limit = limit
        super().__init__(f"{name} exceeded the limit of {limit} commands")


# -- values -----------------------------------------------------------------


def to_bits(value_type, value):
    """Raw unsigned bit pattern of ``value`` (an int, or a float for f32/f64)."""
    if isinstance(value, float):
        if value_type == "f32":
            return struct.unpack("<I", struct.pack("<f", value))[0]
        if value_type == "f64":
            return struct.unpack("<Q", struct.pack("<d", value))[0]
        raise TypeError(f"{value_type} argument must be an integer")
    width = 64 if value_type in ("i64", "f64") else 32
    return int(value) & ((1 << width) - 1)


def from_bits(value_type, bits):
    """Signed integers for i32/i64, raw bits for floats."""
    if value_type == "i32":
        bits &= 0xFFFFFFFF
        return bits - (1 << 32) if bits & 0x80000000 else bits
    if value_type == "i64":
        bits &= 0xFFFFFFFFFFFFFFFF
        return bits - (1 << 64) if bits >> 63 else bits
    return bits


def bits_to_float(value_type, bits):
    if value_type == "f32":
        return struct.unpack("<f", struct.pack("<I", bits & 0xFFFFFFFF))[0]
    return struct.unpack("<d", struct.pack("<Q", bits & 0xFFFFFFFFFFFFFFFF))[0]


def join_words(lo, hi):
    return ((hi & 0xFFFFFFFF) << 32) | (lo & 0xFFFFFFFF)


@dataclass
class ExecutionResult:
    """Outcome of calling one exported function."""

    results: list
    trap: str | None = None
    ticks: int = 0
    exit_code: int | None = None
    output: list = field(default_factory=list)
    text: str = ""
    commands: int = 0

    @property
    def trapped(self):
        return self.trap is not None

    @property
    def value(self):
        return self.results[0] if self.results else None


# -- SNBT and NBT paths -----------------------------------------------------


class _SnbtParser:
    def __init__(self, text):
        self.text = text
        self.pos = 0

    def error(self, message):
        return CommandError(f"{message} at {self.pos} in SNBT {self.text[:60]!r}")

    def skip(self):
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def value(self):
        self.skip()
        if self.pos >= len(self.text):
            raise self.error("unexpected end")
        ch = self.text[self.pos]
        if ch == "{":
            return self.compound()
        if ch == "[":
            return self.list()
        if ch in "\"'":
            return self.quoted()
        match = _UNQUOTED.match(self.text, self.pos)
        if not match:
            raise self.error("unexpected character")
        self.pos = match.end()
        return _scalar(match.group())

    def quoted(self):
        quote = self.text[self.pos]
        self.pos += 1
        chars = []
        while self.pos < len(self.text):
            ch = self.text[self.pos]
            self.pos += 1
            if ch == "\\":
                chars.append(self.text[self.pos])
                self.pos += 1
            elif ch == quote:
                return "".join(chars)
            else:
                chars.append(ch)
        raise self.error("unterminated string")

    def expect(self, ch):
        self.skip()
        if self.pos >= len(self.text) or self.text[self.pos] != ch:
            raise self.error(f"expected {ch!r}")
        self.pos += 1

    def compound(self):
        self.pos += 1
        result = {}
        self.skip()
        if self.text.startswith("}", self.pos):
            self.pos += 1
            return result
        while True:
            self.skip()
            if self.text[self.pos] in "\"'":
                key = self.quoted()
            else:
                match = _UNQUOTED.match(self.text, self.pos)
                if not match:
                    raise self.error("expected key")
                key = match.group()
                self.pos = match.end()
            self.expect(":")
            result[key] = self.value()
            self.skip()
            if self.text.startswith(",", self.pos):
                self.pos += 1
                continue
            self.expect("}")
            return result

    def list(self):
        self.pos += 1
        if self.text[self.pos:self.pos + 2] in ("I;", "B;", "L;"):
            end = self.text.index("]", self.pos)
            body = self.text[self.pos + 2:end].strip()
            self.pos = end + 1
            if not body:
                return []
            return [int(item.strip().rstrip("bBlL")) for item in body.split(",")]
        items = []
        self.skip()
        if self.text.startswith("]", self.pos):
            self.pos += 1
            return items
        while True:
            items.append(self.value())
            self.skip()
            if self.text.startswith(",", self.pos):
                self.pos += 1
                continue
            self.expect("]")
            return items


def _scalar(token):
    if _INT_TOKEN.match(token):
        return int(token.rstrip("bBsSlL"))
    if _FLOAT_TOKEN.match(token):
        return float(token.rstrip("fFdD"))
    if token in ("true", "false"):
        return int(token == "true")
    return token


def parse_snbt(text):
    """Parse stringified NBT into dicts, lists, ints, floats and strings."""
    parser = _SnbtParser(text)
    value = parser.value()
    parser.skip()
    if parser.pos != len(text):
        raise parser.error("trailing characters")
    return value


def to_snbt(value):
    if isinstance(value, dict):
        return "{" + ",".join(f"{_snbt_key(k)}:{to_snbt(v)}" for k, v in value.items()) + "}"
    if isinstance(value, list):
        return "[" + ",".join(to_snbt(v) for v in value) + "]"
    if isinstance(value, str):
        return json.dumps(value)
    return str(value)


def _snbt_key(key):
    return key if _UNQUOTED.fullmatch(key) else json.dumps(key)


def _macro_text(value):
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return to_snbt(value)
    return str(value)


def parse_path(text):
    """``stack[-1].l0`` -> ``("stack", -1, "l0")``."""
    parts = []
    pos = 0
    while pos < len(text):
        match = _PATH_TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise CommandError(f"unsupported NBT path {text!r}")
        if match.group(1) is not None:
            parts.append(int(match.group(1)))
        elif match.group(2) is not None:
            parts.append(match.group(2))
        else:
            parts.append(match.group(3))
        pos = match.end()
    if not parts:
        raise CommandError("empty NBT path")
    return tuple(parts)


def _clone(value):
    if isinstance(value, list):
        if value and isinstance(value[0], (list, dict)):
            return [_clone(v) for v in value]
        return value[:]
    if isinstance(value, dict):
        return {k: _clone(v) for k, v in value.items()}
    return value


def _in_range(node, index):
    return isinstance(node, list) and -len(node) <= index < len(node)


def lookup_path(root, path):
    node = root
    for part in path:
        if isinstance(part, int):
            if not _in_range(node, part):
                return _MISSING
        elif not isinstance(node, dict) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _container(root, path, create):
    node = root
    for part, following in zip(path, path[1:]):
        if isinstance(part, int):
            if not _in_range(node, part):
                return None
        elif not isinstance(node, dict):
            return None
        elif part not in node:
            if not create or isinstance(following, int):
                return None
            node[part] = {}
        node = node[part]
    return node


def assign_path(root, path, value):
    parent = _container(root, path, True)
    key = path[-1]
    if isinstance(key, int):
        if not _in_range(parent, key):
            return False
    elif not isinstance(parent, dict):
        return False
    parent[key] = value
    return True


def remove_path(root, path):
    parent = _container(root, path, False)
    key = path[-1]
    if isinstance(key, int):
        if not _in_range(parent, key):
            return False
    elif not isinstance(parent, dict) or key not in parent:
        return False
    del parent[key]
    return True


# -- parsing ----------------------------------------------------------------


def _int(token):
    try:
        return int(token)
    except ValueError:
        raise CommandError(f"expected an integer, found {token!r}") from None


def parse_range(text):
    if ".." in text:
        lo, hi = text.split("..", 1)
        return (_int(lo) if lo else None, _int(hi) if hi else None)
    value = _int(text)
    return value, value


def _ticks(text):
    unit = text[-1]
    if unit in TICKS_PER_UNIT:
        return int(float(text[:-1]) * TICKS_PER_UNIT[unit])
    return _int(text)


def _block_id(name):
    return name if ":" in name else f"minecraft:{name}"


def parse_command(line):
    """Parse one command into a ``(kind, *operands)`` tuple."""
    tokens = line.split(" ")
    head = tokens[0]
    if head == "scoreboard":
        return _parse_scoreboard(tokens, line)
    if head == "execute":
        return _parse_execute(tokens)
    if head == "function":
        return _parse_function(tokens, line)
    if head == "return":
        if len(tokens) >= 3 and tokens[1] == "run":
            return ("return_run", parse_command(" ".join(tokens[2:])))
        if len(tokens) == 2:
            return ("return", None if tokens[1] == "fail" else _int(tokens[1]))
    elif head == "data":
        return _parse_data(line)
    elif head == "schedule":
        if tokens[1] == "function" and len(tokens) >= 4:
            mode = tokens[4] if len(tokens) > 4 else "replace"
            return ("schedule", tokens[2], _ticks(tokens[3]), mode)
        if tokens[1] == "clear" and len(tokens) == 3:
            return ("schedule_clear", tokens[2])
    elif head == "tellraw":
        parts = line.split(" ", 2)
        return ("tellraw", json.loads(parts[2]))
    elif head == "say":
        return ("tellraw", line[4:])
    elif head == "random" and len(tokens) == 3 and tokens[1] in ("value", "roll"):
        lo, hi = parse_range(tokens[2])
        return ("random", lo, hi)
    elif head == "setblock" and len(tokens) >= 5:
        position = tuple(_int(t) for t in tokens[1:4])
        return ("setblock", position, _block_id(tokens[4]))
    elif head == "fill" and len(tokens) == 8:
        corners = tuple(_int(t) for t in tokens[1:7])
        return ("fill", corners[:3], corners[3:], _block_id(tokens[7]))
    elif head == "clone" and len(tokens) in (10, 11):
        coords = tuple(_int(t) for t in tokens[1:10])
        mode = tokens[10] if len(tokens) == 11 else "replace"
        if mode in ("replace", "masked"):
            return ("clone", coords[:3], coords[3:6], coords[6:], mode)
    raise CommandError(f"unsupported command: {line}")


def _parse_scoreboard(tokens, line):
    if tokens[1] == "objectives" and tokens[2] == "add" and len(tokens) >= 5:
        return ("objective_add", tokens[3])
    if tokens[1] == "players":
        action = tokens[2]
        if action == "set" and len(tokens) == 6:
            return ("players_add", tokens[3], tokens[4], _int(tokens[5]), True)
        if action in ("add", "remove") and len(tokens) == 6:
            amount = _int(tokens[5])
            return ("players_add", tokens[3], tokens[4], -amount if action == "remove" else amount, False)
        if action == "get" and len(tokens) == 5:
            return ("players_get", tokens[3], tokens[4])
        if action == "reset" and len(tokens) in (4, 5):
            return ("players_reset", tokens[3], tokens[4] if len(tokens) == 5 else None)
        if action == "operation" and len(tokens) == 8:
            return ("players_operation", tokens[3], tokens[4], tokens[5], tokens[6], tokens[7])
    raise CommandError(f"unsupported command: {line}")


def _parse_function(tokens, line):
    name = tokens[1]
    if len(tokens) == 2:
        return ("function", name, None)
    if tokens[2] == "with" and tokens[3] == "storage" and len(tokens) == 6:
        return ("function", name, ("storage", tokens[4], parse_path(tokens[5])))
    if tokens[2].startswith("{"):
        return ("function", name, ("inline", parse_snbt(line.split(" ", 2)[2])))
    raise CommandError(f"unsupported command: {line}")


def _parse_data(line):
    parts = line.split(" ", 6)
    action = parts[1]
    if parts[2] != "storage":
        raise CommandError(f"only storage targets are supported: {line}")
    storage = parts[3]
    if action == "get":
        scale = float(parts[5]) if len(parts) > 5 else 1.0
        return ("data_get", storage, parse_path(parts[4]), scale)
    if action == "remove" and len(parts) == 5:
        return ("data_remove", storage, parse_path(parts[4]))
    if action == "modify" and len(parts) == 7 and parts[5] in ("set", "append"):
        path = parse_path(parts[4])
        source = parts[6]
        if source.startswith("value "):
            return ("data_" + parts[5], storage, path, ("value", parse_snbt(source[6:])))
        words = source.split(" ")
        if words[0] == "from" and words[1] == "storage" and len(words) == 4:
            return ("data_" + parts[5], storage, path, ("from", words[2], parse_path(words[3])))
    raise CommandError(f"unsupported command: {line}")


def _parse_execute(tokens):
    steps = []
    index = 1
    while index < len(tokens):
        word = tokens[index]
        if word == "run":
            return ("execute", tuple(steps), parse_command(" ".join(tokens[index + 1:])))
        if word in ("if", "unless"):
            negate = word == "unless"
            kind = tokens[index + 1]
            if kind == "score" and tokens[index + 4] == "matches":
                steps.append(("matches", negate, tokens[index + 2], tokens[index + 3],
                              parse_range(tokens[index + 5])))
                index += 6
            elif kind == "score":
                steps.append(("compare", negate, tokens[index + 2], tokens[index + 3],
                              tokens[index + 4], tokens[index + 5], tokens[index + 6]))
                index += 7
            elif kind == "block":
                position = tuple(_int(t) for t in tokens[index + 2:index + 5])
                steps.append(("block", negate, position, _block_id(tokens[index + 5])))
                index += 6
            elif kind == "data" and tokens[index + 2] == "storage":
                steps.append(("data", negate, tokens[index + 3], parse_path(tokens[index + 4])))
                index += 5
            else:
                raise CommandError(f"unsupported execute condition: {' '.join(tokens)}")
        elif word == "store":
            mode = tokens[index + 1]
            if mode not in ("result", "success"):
                raise CommandError(f"unsupported execute store mode {mode!r}")
            if tokens[index + 2] == "score":
                steps.append(("store", mode, ("score", tokens[index + 3], tokens[index + 4])))
                index += 5
            elif tokens[index + 2] == "storage":
                target = ("storage", tokens[index + 3], parse_path(tokens[index + 4]),
                          tokens[index + 5], float(tokens[index + 6]))
                steps.append(("store", mode, target))
                index += 7
            else:
                raise CommandError(f"unsupported execute store target: {' '.join(tokens)}")
        else:
            raise CommandError(f"unsupported execute subcommand {word!r}")
    return ("execute", tuple(steps), None)


# -- execution --------------------------------------------------------------


@dataclass
class _Invoke:
    name: str
    args: dict | None
    tail: bool = False
    stores: tuple = ()


@dataclass
class _Return:
    value: int | None


@dataclass
class _Frame:
    name: str
    commands: list
    args: dict | None
    stores: tuple
    pc: int = 0


def _floor_div(a, b):
    return a if b == 0 else wrap32(a // b)


def _floor_mod(a, b):
    return a if b == 0 else a % b


_OPERATIONS = {
    "+=": lambda a, b: wrap32(a + b),
    "-=": lambda a, b: wrap32(a - b),
    "*=": lambda a, b: wrap32(a * b),
    "/=": _floor_div,
    "%=": _floor_mod,
    "<": min,
    ">": max,
}

_COMPARISONS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    "=": lambda a, b: a == b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}

_STORE_WIDTHS = {"byte": 8, "short": 16, "int": 32, "long": 64}


def _wrap_width(value, bits):
    value &= (1 << bits) - 1
    return value - (1 << bits) if value >> (bits - 1) else value


class CommandVM:
    """Runs the functions of an assembled module or a loaded datapack."""

    def __init__(self, pack, max_commands=DEFAULT_MAX_COMMANDS, strict=True, seed=0, load=True):
        self.namespace = pack.namespace
        self.manifest = pack.manifest
        self.functions = {name: list(func.commands) for name, func in pack.functions.items()}
        self.macros = {
            name for name, commands in self.functions.items()
            if any(c.startswith("$") for c in commands)
        }
        self.load_functions = list(pack.load)
        self.tick_functions = list(pack.tick)
        self.max_commands = max_commands
        self.strict = strict
        self.random = random.Random(seed)

        self.scores = {}
        self.storage = {}
        self.blocks = {}
        self.scheduled = []
        self.chat = []
        self.executed = Counter()
        self.game_time = 0
        self.total_commands = 0
        self._parsed = {}
        self._remaining = 0
        if load:
            self.reload()

    # -- state access ---------------------------------------------------

    def score(self, holder, objective=OBJECTIVE):
        return self.scores.get(objective, {}).get(holder)

    def set_score(self, holder, value, objective=OBJECTIVE):
        self._write(holder, objective, value)

    def get_storage(self, storage, path=None):
        root = self.storage.get(storage, {})
        if not path:
            return root
        value = lookup_path(root, parse_path(path))
        return None if value is _MISSING else value

    def read_memory(self, address, length):
        """Bytes of linear memory as currently held in storage."""
        pages = self.get_storage(f"{self.namespace}:memory", "pages") or []
        data = bytearray()
        for byte_address in range(address, address + length):
            word, shift = divmod(byte_address, 4)
            page, index = divmod(word, 16384)
            value = pages[page][index] & 0xFFFFFFFF
            data.append((value >> (shift * 8)) & 0xFF)
        return bytes(data)

    def block_at(self, x, y, z):
        return self.blocks.get((x, y, z), "minecraft:air")

    # -- driving --------------------------------------------------------

    def reload(self):
        """Run the load tag, as the game does on ``/reload``."""
        for name in self.load_functions:
            self.run_function(name)

    def tick(self):
        """Advance one game tick: tick functions first, then due schedules."""
        self.game_time += 1
        for name in self.tick_functions:
            self.run_function(name)
        due = [entry for entry in self.scheduled if entry[0] <= self.game_time]
        self.scheduled = [entry for entry in self.scheduled if entry[0] > self.game_time]
        for _, name in due:
            self.run_function(name)

    def call(self, export, *args, max_ticks=DEFAULT_MAX_TICKS):
        """Invoke an exported function and tick until it finishes."""
        try:
            info = self.manifest["exports"][export]
        except KeyError:
            raise KeyError(f"no exported function {export!r}") from None
        params = info["params"]
        if len(args) != len(params):
            raise TypeError(f"{export} expects {len(params)} arguments, got {len(args)}")
        for index, (value_type, value) in enumerate(zip(params, args)):
            lo, hi = split64(to_bits(value_type, value))
            self.set_score(f"%arg{index}", lo)
            if value_type in ("i64", "f64"):
                self.set_score(f"%arg{index}h", hi)

        io = f"{self.namespace}:io"
        out_before = len(self.get_storage(io, "out") or [])
        chars_before = len(self.get_storage(io, "chars") or [])
        exit_name = f"{self.namespace}:rt/exit"
        exits_before = self.executed[exit_name]
        commands_before = self.total_commands

        self.run_function(info["function"])
        ticks = 0
        while self.score("%done") != 1:
            if not self.scheduled:
                raise CommandError(f"{export} stopped without finishing")
            if ticks >= max_ticks:
                raise CommandError(f"{export} did not finish within {max_ticks} ticks")
            self.tick()
            ticks += 1

        kinds = {code: kind for kind, code in self.manifest["traps"].items()}
        trap = kinds.get(self.score("%trap")) if self.score("%trap") else None
        exited = self.executed[exit_name] > exits_before
        results = []
        if trap is None and not exited:
            for index, value_type in enumerate(info["results"]):
                lo = self.score(f"%r{index}")
                hi = self.score(f"%r{index}h") if value_type in ("i64", "f64") else 0
                results.append(from_bits(value_type, join_words(lo, hi)))
        output = [
            _output_value(entry)
            for entry in (self.get_storage(io, "out") or [])[out_before:]
        ]
        chars = (self.get_storage(io, "chars") or [])[chars_before:]
        result = ExecutionResult(
            results,
            trap,
            ticks,
            self.score("%exit") if exited else None,
            output,
            "".join(chr(c) for c in chars if 0 <= c < 0x110000),
            self.total_commands - commands_before,
        )
        logger.debug("%s%r -> %s", export, args, result)
        return result

    def run_function(self, name, args=None):
        """Run ``name`` as a top-level invocation and return its result."""
        self._remaining = self.max_commands
        frames = [self._frame(name, args, ())]
        value = 0
        while frames:
            frame = frames[-1]
            if frame.pc >= len(frame.commands):
                frames.pop()
                self._apply_stores(frame.stores, None)
                continue
            line = frame.commands[frame.pc]
            frame.pc += 1
            if not line or line.startswith("#"):
                continue
            if line.startswith("$"):
                line = self._substitute(line[1:], frame.args, frame.name)
            self._count(name)
            result, control = self._execute(self._parse(line))
            if control is None:
                continue
            if isinstance(control, _Return):
                frames.pop()
                self._apply_stores(frame.stores, control.value)
                value = control.value
            elif control.tail:
                frames[-1] = self._frame(control.name, control.args, frame.stores)
            else:
                frames.append(self._frame(control.name, control.args, control.stores))
        return value

    def run_command(self, line):
        """Execute a single command outside of any function."""
        self._remaining = self.max_commands
        result, control = self._execute(self._parse(line))
        if isinstance(control, _Invoke):
            return self.run_function(control.name, control.args)
        return result

    # -- internals ------------------------------------------------------

    def _frame(self, name, args, stores):
        commands = self.functions.get(name)
        if commands is None:
            raise CommandError(f"unknown function {name}")
        if args is None and name in self.macros:
            raise CommandError(f"macro function {name} called without arguments")
        self.executed[name] += 1
        return _Frame(name, commands, args, stores)

    def _count(self, name):
        self.total_commands += 1
        self._remaining -= 1
        if self._remaining < 0:
            raise CommandLimitExceeded(name, self.max_commands)

    def _parse(self, line):
        parsed = self._parsed.get(line)
        if parsed is None:
            if len(self._parsed) > 200000:
                self._parsed.clear()
            parsed = self._parsed[line] = parse_command(line)
        return parsed

    def _substitute(self, line, args, name):
        def replace(match):
            key = match.group(1)
            if key not in args:
                raise CommandError(f"{name}: missing macro argument {key!r}")
            return _macro_text(args[key])

        return _MACRO.sub(replace, line)

    def _fail(self, message):
        if self.strict:
            raise CommandError(message)
        logger.debug("command failed: %s", message)
        return None, None

    def _read(self, holder, objective):
        value = self.scores.get(objective, {}).get(holder)
        if value is None and self.strict:
            raise UnsetScoreError(holder, objective)
        return value

    def _write(self, holder, objective, value):
        table = self.scores.get(objective)
        if table is None:
            raise CommandError(f"unknown scoreboard objective {objective!r}")
        table[holder] = wrap32(value)

    def _root(self, storage):
        return self.storage.setdefault(storage, {})

    def _execute(self, parsed):
        return getattr(self, "_cmd_" + parsed[0])(*parsed[1:])

    def _apply_stores(self, stores, value):
        for mode, target in stores:
            if mode == "success":
                stored = 0 if value is None else 1
            else:
                stored = 0 if value is None else value
            if target[0] == "score":
                self._write(target[1], target[2], stored)
                continue
            _, storage, path, kind, scale = target
            scaled = stored * scale
            if kind in _STORE_WIDTHS:
                number = _wrap_width(math.floor(scaled), _STORE_WIDTHS[kind])
            else:
                number = float(scaled)
            if not assign_path(self._root(storage), path, number):
                self._fail(f"cannot store into {storage} {'.'.join(map(str, path))}")

    # -- commands -------------------------------------------------------

    def _cmd_objective_add(self, name):
        if name in self.scores:
            return None, None
        self.scores[name] = {}
        return 1, None

    def _cmd_players_add(self, holder, objective, amount, absolute):
        if absolute:
            value = amount
        else:
            current = self._read(holder, objective)
            value = (current or 0) + amount
        self._write(holder, objective, value)
        return self.scores[objective][holder], None

    def _cmd_players_get(self, holder, objective):
        return self._read(holder, objective), None

    def _cmd_players_reset(self, holder, objective):
        tables = [self.scores.get(objective, {})] if objective else self.scores.values()
        for table in tables:
            table.pop(holder, None)
        return 1, None

    def _cmd_players_operation(self, target, target_obj, operator, source, source_obj):
        b = self._read(source, source_obj) or 0
        if operator == "=":
            self._write(target, target_obj, b)
            return b, None
        a = self._read(target, target_obj) or 0
        if operator == "><":
            self._write(target, target_obj, b)
            self._write(source, source_obj, a)
            return b, None
        try:
            value = _OPERATIONS[operator](a, b)
        except KeyError:
            raise CommandError(f"unknown scoreboard operation {operator!r}") from None
        self._write(target, target_obj, value)
        return value, None

    def _cmd_execute(self, steps, run):
        stores = []
        for step in steps:
            if step[0] == "store":
                stores.append(step[1:])
                continue
            if self._test(step) == step[1]:
                self._apply_stores(stores, None)
                return None, None
        if run is None:
            self._apply_stores(stores, 1)
            return 1, None
        value, control = self._execute(run)
        if isinstance(control, _Invoke):
            if not control.tail:
                control.stores = tuple(stores)
            return value, control
        if control is None:
            self._apply_stores(stores, value)
        return value, control

    def _test(self, step):
        kind = step[0]
        if kind == "matches":
            _, _, holder, objective, (lo, hi) = step
            value = self._read(holder, objective)
            if value is None:
                return False
            return (lo is None or value >= lo) and (hi is None or value <= hi)
        if kind == "compare":
            _, _, a, a_obj, operator, b, b_obj = step
            left = self._read(a, a_obj)
            right = self._read(b, b_obj)
            if left is None or right is None:
                return False
            return _COMPARISONS[operator](left, right)
        if kind == "block":
            return self.blocks.get(step[2], "minecraft:air") == step[3]
        if kind == "data":
            return lookup_path(self._root(step[2]), step[3]) is not _MISSING
        raise CommandError(f"unsupported execute condition {kind!r}")  # pragma: no cover

    def _cmd_function(self, name, source):
        args = None
        if source is not None:
            if source[0] == "inline":
                args = source[1]
            else:
                args = lookup_path(self._root(source[1]), source[2])
                if not isinstance(args, dict):
                    raise CommandError(
                        f"function {name}: no compound at {source[1]} "
                        f"{'.'.join(map(str, source[2]))}"
                    )
        return None, _Invoke(name, args)

    def _cmd_return(self, value):
        return value, _Return(value)

    def _cmd_return_run(self, parsed):
        value, control = self._execute(parsed)
        if isinstance(control, _Invoke):
            control.tail = True
            return value, control
        if control is None:
            return value, _Return(value)
        return value, control

    def _cmd_data_get(self, storage, path, scale):
        value = lookup_path(self._root(storage), path)
        if value is _MISSING:
            return self._fail(f"nothing at {storage} {'.'.join(map(str, path))}")
        if isinstance(value, (dict, list, str)):
            return len(value), None
        return math.floor(value * scale), None

    def _cmd_data_remove(self, storage, path):
        if not remove_path(self._root(storage), path):
            return self._fail(f"cannot remove {storage} {'.'.join(map(str, path))}")
        return 1, None

    def _source(self, source):
        if source[0] == "value":
            return _clone(source[1])
        value = lookup_path(self._root(source[1]), source[2])
        return _MISSING if value is _MISSING else _clone(value)

    def _cmd_data_set(self, storage, path, source):
        value = self._source(source)
        if value is _MISSING or not assign_path(self._root(storage), path, value):
            return self._fail(f"cannot set {storage} {'.'.join(map(str, path))}")
        return 1, None

    def _cmd_data_append(self, storage, path, source):
        value = self._source(source)
        root = self._root(storage)
        target = lookup_path(root, path)
        if target is _MISSING:
            target = []
            if not assign_path(root, path, target):
                target = None
        if value is _MISSING or not isinstance(target, list):
            return self._fail(f"cannot append to {storage} {'.'.join(map(str, path))}")
        target.append(value)
        return len(target), None

    def _cmd_schedule(self, name, ticks, mode):
        if ticks < 1:
            raise CommandError("schedule delay must be at least one tick")
        if name not in self.functions:
            raise CommandError(f"unknown function {name}")
        if mode == "replace":
            self.scheduled = [entry for entry in self.scheduled if entry[1] != name]
        self.scheduled.append((self.game_time + ticks, name))
        return self.game_time + ticks, None

    def _cmd_schedule_clear(self, name):
        before = len(self.scheduled)
        self.scheduled = [entry for entry in self.scheduled if entry[1] != name]
        return before - len(self.scheduled), None

    def _cmd_tellraw(self, component):
        message = self._render(component)
        self.chat.append(message)
        logger.debug("chat: %s", message)
        return 1, None

    def _render(self, component):
        if isinstance(component, str):
            return component
        if isinstance(component, list):
            return "".join(self._render(c) for c in component)
        text = component.get("text", "")
        if "score" in component:
            score = component["score"]
            value = self.score(score["name"], score["objective"])
            text = "" if value is None else str(value)
        return text + "".join(self._render(c) for c in component.get("extra", []))

    def _cmd_random(self, lo, hi):
        return self.random.randint(lo, hi), None

    def _cmd_setblock(self, position, block):
        self.blocks[position] = block
        return 1, None

    def _region(self, begin, end):
        low = tuple(min(a, b) for a, b in zip(begin, end))
        high = tuple(max(a, b) for a, b in zip(begin, end))
        volume = math.prod(h - l + 1 for l, h in zip(low, high))
        if volume > MAX_FILL_VOLUME:
            return low, high, None
        positions = itertools.product(*(range(l, h + 1) for l, h in zip(low, high)))
        return low, high, list(positions)

    def _cmd_fill(self, begin, end, block):
        _, _, positions = self._region(begin, end)
        if positions is None:
            return self._fail(f"too many blocks in fill region (more than {MAX_FILL_VOLUME})")
        for position in positions:
            self.blocks[position] = block
        return len(positions), None

    def _cmd_clone(self, begin, end, destination, mode):
        low, high, positions = self._region(begin, end)
        if positions is None:
            return self._fail(f"too many blocks in clone region (more than {MAX_FILL_VOLUME})")
        shift = tuple(d - l for d, l in zip(destination, low))
        if all(d <= h and l <= h + s for d, l, h, s in zip(destination, low, high, shift)):
            return self._fail("clone source and destination overlap")
        copied = {}
        for position in positions:
            block = self.block_at(*position)
            if mode == "masked" and block == "minecraft:air":
                continue
            copied[tuple(p + s for p, s in zip(position, shift))] = block
        self.blocks.update(copied)
        return len(copied), None


def _output_value(entry):
    if isinstance(entry, dict):
        if "hi" in entry:
            return from_bits("i64", join_words(entry.get("lo", 0), entry["hi"]))
        return entry.get("lo", 0)
    return entry


__all__ = [
    "CommandError",
    "CommandLimitExceeded",
    "CommandVM",
    "DEFAULT_MAX_TICKS",
    "ExecutionResult",
    "UnsetScoreError",
    "bits_to_float",
    "from_bits",
    "join_words",
    "parse_command",
    "parse_path",
    "parse_range",
    "parse_snbt",
    "to_bits",
    "to_snbt",
]
