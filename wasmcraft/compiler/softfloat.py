"""Software floating point.

Float arithmetic, rounding, conversions and truncations have no bit-pattern
lowering on 32-bit scores.  :func:`lower_floats` rewrites each of them into a
call to a helper function written in integer WebAssembly and appended to the
module, so the rest of the pipeline only ever sees integer arithmetic.

The helpers pass intermediate values around as ``(sign, exp, sig)`` triples
standing for ``sig * 2**(exp - 1084)`` (``2**(exp - 188)`` when packed as
f32), with ``0 <= sig < 2**63``.  ``f64_pack`` and ``f32_pack`` normalize
such a triple and round it to nearest, ties to even.  NaN results are the
canonical quiet NaN.  f32 add, sub, mul, div and sqrt are computed in f64
and rounded a second time, which yields the correctly rounded f32 result
because 53 >= 2 * 24 + 2.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace

from .module import FuncType, Function, Instr
from .text import parse_instr
from .validator import validate_module

logger = logging.getLogger(__name__)

FORMATS = {
    "f32": {"mant": 23, "bias": 127, "emax": 0xFF, "sign": 31, "offset": 188, "top": 0xFD,
            "round": 39, "nan": 0x7FC00000},
    "f64": {"mant": 52, "bias": 1023, "emax": 0x7FF, "sign": 63, "offset": 1084, "top": 0x7FD,
            "round": 10, "nan": 0x7FF8000000000000},
}


@dataclass(frozen=True)
class Helper:
    """A helper function in the flat text form.

    ``$name`` refers to a parameter or local, ``@name`` to another helper and
    ``unreachable <kind>`` traps with that kind.
    """

    name: str
    params: tuple
    results: tuple
    locals: tuple
    body: str

    @property
    def func_type(self):
        return FuncType([t for _, t in self.params], self.results)

    @property
    def callees(self):
        return sorted(set(re.findall(r"@(\w+)", self.body)))

    def instructions(self, indices):
        slots = {name: index for index, (name, _) in enumerate(self.params + self.locals)}
        instrs = []
        for raw in self.body.splitlines():
            line = raw.split(";;", 1)[0].strip()
            if not line:
                continue
            line = re.sub(r"\$(\w+)", lambda m: str(slots[m.group(1)]), line)
            line = re.sub(r"@(\w+)", lambda m: str(indices[m.group(1)]), line)
            op, *rest = line.split()
            if op == "unreachable" and rest:
                instrs.append(Instr(op, rest[0]))
            else:
                instrs.append(parse_instr(line))
        instrs.append(Instr("end"))
        return instrs


HELPERS = {}


def _slots(spec):
    slots = []
    for token in spec.split():
        name, _, value_type = token.partition(":")
        slots.append((name, value_type or "i64"))
    return tuple(slots)


def _define(name, params, results, locals, body):
    HELPERS[name] = Helper(name, _slots(params), tuple(results.split()), _slots(locals), body)


# -- text snippets ----------------------------------------------------------


def _to_bits(fmt):
    return "i64.reinterpret_f64" if fmt == "f64" else "i32.reinterpret_f32\ni64.extend_i32_u"


def _from_bits(fmt):
    return "f64.reinterpret_i64" if fmt == "f64" else "i32.wrap_i64\nf32.reinterpret_i32"


def _return_nan(fmt):
    return f"i64.const {FORMATS[fmt]['nan']:#x}\n{_from_bits(fmt)}\nreturn"


def _signed(fmt, sign, value=0):
    """Push ``value`` with the sign bit taken from local ``sign``."""
    return f"""
        local.get ${sign}
        i64.const {FORMATS[fmt]['sign']}
        i64.shl
        i64.const {value:#x}
        i64.or
    """


def _unpack(fmt, bits, exp, sig, sign):
    f = FORMATS[fmt]
    return f"""
        local.get ${bits}
        i64.const {f['sign']}
        i64.shr_u
        local.set ${sign}
        local.get ${bits}
        i64.const {f['mant']}
        i64.shr_u
        i64.const {f['emax']:#x}
        i64.and
        local.set ${exp}
        local.get ${bits}
        i64.const {(1 << f['mant']) - 1:#x}
        i64.and
        local.set ${sig}
    """


def _is_special(fmt, exp):
    return f"""
        local.get ${exp}
        i64.const {FORMATS[fmt]['emax']:#x}
        i64.eq
    """


def _is_nonzero(local):
    return f"""
        local.get ${local}
        i64.const 0
        i64.ne
    """


def _is_zero(fmt, bits):
    return f"""
        local.get ${bits}
        i64.const {(1 << FORMATS[fmt]['sign']) - 1:#x}
        i64.and
        i64.eqz
    """


def _hidden(fmt, exp, sig):
    """Add the implicit leading one, or give subnormals the minimum exponent."""
    return f"""
        local.get ${exp}
        i64.eqz
        if
          i64.const 1
          local.set ${exp}
        else
          local.get ${sig}
          i64.const {1 << FORMATS[fmt]['mant']:#x}
          i64.or
          local.set ${sig}
        end
    """


def _normalize(exp, sig, tmp):
    """Shift a nonzero f64 significand so that bit 52 leads."""
    return f"""
        local.get ${sig}
        i64.clz
        i64.const 11
        i64.sub
        local.set ${tmp}
        local.get ${sig}
        local.get ${tmp}
        i64.shl
        local.set ${sig}
        local.get ${exp}
        local.get ${tmp}
        i64.sub
        local.set ${exp}
    """


def _swap(a, b, tmp):
    return f"""
        local.get ${a}
        local.set ${tmp}
        local.get ${b}
        local.set ${a}
        local.get ${tmp}
        local.set ${b}
    """


def _load(fmt, source, bits):
    return f"""
        local.get ${source}
        {_to_bits(fmt)}
        local.set ${bits}
    """


# -- shared integer helpers -------------------------------------------------

_define("shift_right_jam", "a dist", "i64", "", """
    local.get $dist
    i64.eqz
    if
      local.get $a
      return
    end
    local.get $dist
    i64.const 63
    i64.lt_u
    if i64
      local.get $a
      local.get $dist
      i64.shr_u
      local.get $a
      i64.const 64
      local.get $dist
      i64.sub
      i64.shl
      i64.const 0
      i64.ne
      i64.extend_i32_u
      i64.or
    else
      local.get $a
      i64.const 0
      i64.ne
      i64.extend_i32_u
    end
""")

# high 64 bits of an unsigned 64x64 product, low bit set when the low
# 64 bits are nonzero
_define("mul_hi_jam", "a b", "i64", "a1 a0 b1 b0 p00 p01 p10 mid", """
    local.get $a
    i64.const 32
    i64.shr_u
    local.set $a1
    local.get $a
    i64.const 0xffffffff
    i64.and
    local.set $a0
    local.get $b
    i64.const 32
    i64.shr_u
    local.set $b1
    local.get $b
    i64.const 0xffffffff
    i64.and
    local.set $b0
    local.get $a0
    local.get $b0
    i64.mul
    local.set $p00
    local.get $a0
    local.get $b1
    i64.mul
    local.set $p01
    local.get $a1
    local.get $b0
    i64.mul
    local.set $p10
    local.get $p00
    i64.const 32
    i64.shr_u
    local.get $p01
    i64.const 0xffffffff
    i64.and
    i64.add
    local.get $p10
    i64.const 0xffffffff
    i64.and
    i64.add
    local.set $mid
    local.get $a1
    local.get $b1
    i64.mul
    local.get $p01
    i64.const 32
    i64.shr_u
    i64.add
    local.get $p10
    i64.const 32
    i64.shr_u
    i64.add
    local.get $mid
    i64.const 32
    i64.shr_u
    i64.add
    local.get $mid
    i64.const 0xffffffff
    i64.and
    local.get $p00
    i64.const 0xffffffff
    i64.and
    i64.or
    i64.const 0
    i64.ne
    i64.extend_i32_u
    i64.or
""")


def _define_pack(fmt):
    f = FORMATS[fmt]
    half = 1 << (f["round"] - 1)
    _define(f"{fmt}_pack", "sign exp sig", "i64", "shift rb", f"""
        local.get $sig
        i64.eqz
        if
          local.get $sign
          i64.const {f['sign']}
          i64.shl
          return
        end
        ;; leading one to bit 62
        local.get $sig
        i64.clz
        i64.const 1
        i64.sub
        local.set $shift
        local.get $sig
        local.get $shift
        i64.shl
        local.set $sig
        local.get $exp
        local.get $shift
        i64.sub
        local.set $exp
        local.get $exp
        i64.const 0
        i64.lt_s
        if
          ;; subnormal
          local.get $sig
          i64.const 0
          local.get $exp
          i64.sub
          call @shift_right_jam
          local.set $sig
          i64.const 0
          local.set $exp
        else
          local.get $exp
          i64.const {f['top']:#x}
          i64.gt_s
          local.get $exp
          i64.const {f['top']:#x}
          i64.eq
          local.get $sig
          i64.const {half:#x}
          i64.add
          i64.const 0x8000000000000000
          i64.ge_u
          i32.and
          i32.or
          if
            {_signed(fmt, 'sign', f['emax'] << f['mant'])}
            return
          end
        end
        local.get $sig
        i64.const {(1 << f['round']) - 1:#x}
        i64.and
        local.set $rb
        local.get $sig
        i64.const {half:#x}
        i64.add
        i64.const {f['round']}
        i64.shr_u
        local.set $sig
        local.get $rb
        i64.const {half:#x}
        i64.eq
        if
          ;; tie: round to even
          local.get $sig
          i64.const -2
          i64.and
          local.set $sig
        end
        local.get $sig
        i64.eqz
        if
          i64.const 0
          local.set $exp
        end
        local.get $sign
        i64.const {f['sign']}
        i64.shl
        local.get $exp
        i64.const {f['mant']}
        i64.shl
        i64.add
        local.get $sig
        i64.add
    """)


_define_pack("f64")
_define_pack("f32")


# -- f64 arithmetic ---------------------------------------------------------

_define("f64_add", "a:f64 b:f64", "f64", "ua ub ea eb ma mb sa sb t sign", f"""
    {_load('f64', 'a', 'ua')}
    {_load('f64', 'b', 'ub')}
    {_unpack('f64', 'ua', 'ea', 'ma', 'sa')}
    {_unpack('f64', 'ub', 'eb', 'mb', 'sb')}
    {_is_special('f64', 'ea')}
    if
      {_is_nonzero('ma')}
      if
        {_return_nan('f64')}
      end
      {_is_special('f64', 'eb')}
      if
        ;; NaN, or infinities of opposite signs
        {_is_nonzero('mb')}
        local.get $sa
        local.get $sb
        i64.ne
        i32.or
        if
          {_return_nan('f64')}
        end
      end
      local.get $a
      return
    end
    {_is_special('f64', 'eb')}
    if
      {_is_nonzero('mb')}
      if
        {_return_nan('f64')}
      end
      local.get $b
      return
    end
    {_is_zero('f64', 'ub')}
    if
      {_is_zero('f64', 'ua')}
      if
        ;; -0 only when both are -0
        local.get $ua
        local.get $ub
        i64.and
        f64.reinterpret_i64
        return
      end
      local.get $a
      return
    end
    {_is_zero('f64', 'ua')}
    if
      local.get $b
      return
    end
    {_hidden('f64', 'ea', 'ma')}
    {_hidden('f64', 'eb', 'mb')}
    local.get $ma
    i64.const 9
    i64.shl
    local.set $ma
    local.get $mb
    i64.const 9
    i64.shl
    local.set $mb
    local.get $ea
    local.get $eb
    i64.lt_s
    if
      {_swap('ea', 'eb', 't')}
      {_swap('ma', 'mb', 't')}
      {_swap('sa', 'sb', 't')}
    end
    local.get $mb
    local.get $ea
    local.get $eb
    i64.sub
    call @shift_right_jam
    local.set $mb
    local.get $sa
    local.set $sign
    local.get $sa
    local.get $sb
    i64.eq
    if
      local.get $ma
      local.get $mb
      i64.add
      local.set $ma
    else
      local.get $ma
      local.get $mb
      i64.sub
      local.tee $ma
      i64.eqz
      if
        f64.const 0
        return
      end
      local.get $ma
      i64.const 0
      i64.lt_s
      if
        i64.const 0
        local.get $ma
        i64.sub
        local.set $ma
        local.get $sb
        local.set $sign
      end
    end
    local.get $sign
    local.get $ea
    local.get $ma
    call @f64_pack
    f64.reinterpret_i64
""")

_define("f64_mul", "a:f64 b:f64", "f64", "ua ub ea eb ma mb sa sb t sign", f"""
    {_load('f64', 'a', 'ua')}
    {_load('f64', 'b', 'ub')}
    {_unpack('f64', 'ua', 'ea', 'ma', 'sa')}
    {_unpack('f64', 'ub', 'eb', 'mb', 'sb')}
    local.get $sa
    local.get $sb
    i64.xor
    local.set $sign
    {_is_special('f64', 'ea')}
    {_is_nonzero('ma')}
    i32.and
    {_is_special('f64', 'eb')}
    {_is_nonzero('mb')}
    i32.and
    i32.or
    if
      {_return_nan('f64')}
    end
    {_is_special('f64', 'ea')}
    {_is_special('f64', 'eb')}
    i32.or
    if
      ;; infinity times zero
      {_is_zero('f64', 'ua')}
      {_is_zero('f64', 'ub')}
      i32.or
      if
        {_return_nan('f64')}
      end
      {_signed('f64', 'sign', 0x7FF0000000000000)}
      f64.reinterpret_i64
      return
    end
    {_is_zero('f64', 'ua')}
    {_is_zero('f64', 'ub')}
    i32.or
    if
      {_signed('f64', 'sign')}
      f64.reinterpret_i64
      return
    end
    {_hidden('f64', 'ea', 'ma')}
    {_hidden('f64', 'eb', 'mb')}
    {_normalize('ea', 'ma', 't')}
    {_normalize('eb', 'mb', 't')}
    local.get $sign
    local.get $ea
    local.get $eb
    i64.add
    i64.const 1023
    i64.sub
    local.get $ma
    i64.const 11
    i64.shl
    local.get $mb
    i64.const 10
    i64.shl
    call @mul_hi_jam
    call @f64_pack
    f64.reinterpret_i64
""")


def _quotient_digits(count, width):
    """Long division steps: ``width`` more quotient bits into ``q`` each."""
    step = f"""
        local.get $ma
        i64.const {width}
        i64.shl
        local.tee $ma
        local.get $mb
        i64.div_u
        local.set $d
        local.get $ma
        local.get $d
        local.get $mb
        i64.mul
        i64.sub
        local.set $ma
        local.get $q
        i64.const {width}
        i64.shl
        local.get $d
        i64.or
        local.set $q
    """
    return step * count


_define("f64_div", "a:f64 b:f64", "f64", "ua ub ea eb ma mb sa sb t sign q d", f"""
    {_load('f64', 'a', 'ua')}
    {_load('f64', 'b', 'ub')}
    {_unpack('f64', 'ua', 'ea', 'ma', 'sa')}
    {_unpack('f64', 'ub', 'eb', 'mb', 'sb')}
    local.get $sa
    local.get $sb
    i64.xor
    local.set $sign
    {_is_special('f64', 'ea')}
    {_is_nonzero('ma')}
    i32.and
    {_is_special('f64', 'eb')}
    {_is_nonzero('mb')}
    i32.and
    i32.or
    if
      {_return_nan('f64')}
    end
    {_is_special('f64', 'ea')}
    if
      {_is_special('f64', 'eb')}
      if
        {_return_nan('f64')}
      end
      {_signed('f64', 'sign', 0x7FF0000000000000)}
      f64.reinterpret_i64
      return
    end
    {_is_special('f64', 'eb')}
    if
      {_signed('f64', 'sign')}
      f64.reinterpret_i64
      return
    end
    {_is_zero('f64', 'ub')}
    if
      {_is_zero('f64', 'ua')}
      if
        {_return_nan('f64')}
      end
      {_signed('f64', 'sign', 0x7FF0000000000000)}
      f64.reinterpret_i64
      return
    end
    {_is_zero('f64', 'ua')}
    if
      {_signed('f64', 'sign')}
      f64.reinterpret_i64
      return
    end
    {_hidden('f64', 'ea', 'ma')}
    {_hidden('f64', 'eb', 'mb')}
    {_normalize('ea', 'ma', 't')}
    {_normalize('eb', 'mb', 't')}
    i64.const 0
    local.set $t
    local.get $ma
    local.get $mb
    i64.lt_u
    if
      local.get $ma
      i64.const 1
      i64.shl
      local.set $ma
      i64.const 1
      local.set $t
    end
    ;; the leading quotient bit is one; ma becomes the remainder
    local.get $ma
    local.get $mb
    i64.sub
    local.set $ma
    i64.const 1
    local.set $q
    {_quotient_digits(6, 10)}
    local.get $sign
    local.get $ea
    local.get $eb
    i64.sub
    local.get $t
    i64.sub
    i64.const 1024
    i64.add
    local.get $q
    {_is_nonzero('ma')}
    i64.extend_i32_u
    i64.or
    call @f64_pack
    f64.reinterpret_i64
""")

# digit-by-digit square root of sig * 2**58; the remainder stays below 2**58
_define("f64_sqrt", "a:f64", "f64", "ua ea ma sa t k q r sh", f"""
    {_load('f64', 'a', 'ua')}
    {_unpack('f64', 'ua', 'ea', 'ma', 'sa')}
    {_is_special('f64', 'ea')}
    {_is_nonzero('ma')}
    i32.and
    if
      {_return_nan('f64')}
    end
    {_is_zero('f64', 'ua')}
    if
      local.get $a
      return
    end
    local.get $sa
    i64.eqz
    i32.eqz
    if
      {_return_nan('f64')}
    end
    {_is_special('f64', 'ea')}
    if
      local.get $a
      return
    end
    {_hidden('f64', 'ea', 'ma')}
    {_normalize('ea', 'ma', 't')}
    ;; make the exponent even
    local.get $ea
    i64.const 1075
    i64.sub
    local.tee $k
    i64.const 1
    i64.and
    i64.eqz
    i32.eqz
    if
      local.get $ma
      i64.const 1
      i64.shl
      local.set $ma
      local.get $k
      i64.const 1
      i64.sub
      local.set $k
    end
    i64.const 0
    local.set $q
    i64.const 0
    local.set $r
    i64.const 52
    local.set $sh
    block
      loop
        local.get $r
        i64.const 2
        i64.shl
        local.set $r
        local.get $sh
        i64.const 0
        i64.ge_s
        if
          local.get $r
          local.get $ma
          local.get $sh
          i64.shr_u
          i64.const 3
          i64.and
          i64.or
          local.set $r
        end
        local.get $q
        i64.const 2
        i64.shl
        i64.const 1
        i64.or
        local.set $t
        local.get $q
        i64.const 1
        i64.shl
        local.set $q
        local.get $r
        local.get $t
        i64.ge_u
        if
          local.get $r
          local.get $t
          i64.sub
          local.set $r
          local.get $q
          i64.const 1
          i64.or
          local.set $q
        end
        local.get $sh
        i64.const 2
        i64.sub
        local.tee $sh
        i64.const -60
        i64.gt_s
        br_if 0
      end
    end
    i64.const 0
    local.get $k
    i64.const 58
    i64.sub
    i64.const 1
    i64.shr_s
    i64.const 1084
    i64.add
    local.get $q
    {_is_nonzero('r')}
    i64.extend_i32_u
    i64.or
    call @f64_pack
    f64.reinterpret_i64
""")


# -- rounding to integral values --------------------------------------------

def _round_small(fmt, mode):
    """Result bits for ``0 < |x| < 1`` (or a zero) in ``mode``."""
    f = FORMATS[fmt]
    one = f["bias"] << f["mant"]
    if mode == "trunc":
        return _signed(fmt, "s")
    if mode == "nearest":
        return f"""
            local.get $e
            i64.const {f['bias'] - 1}
            i64.eq
            local.get $u
            i64.const {(1 << f['mant']) - 1:#x}
            i64.and
            i64.const 0
            i64.ne
            i32.and
            if i64
              {_signed(fmt, 's', one)}
            else
              {_signed(fmt, 's')}
            end
        """
    negative, positive = (one | 1 << f["sign"], 0) if mode == "floor" else (1 << f["sign"], one)
    return f"""
        {_is_zero(fmt, 'u')}
        if i64
          local.get $u
        else
          local.get $s
          i64.eqz
          if i64
            i64.const {positive:#x}
          else
            i64.const {negative:#x}
          end
        end
    """


def _round_main(mode):
    """Result bits when ``m`` masks the nonzero fraction bits of ``u``."""
    clear = """
        local.get $m
        i64.const -1
        i64.xor
        i64.and
    """
    if mode == "trunc":
        return "local.get $u\n" + clear
    if mode == "nearest":
        return f"""
            local.get $u
            {clear}
            local.set $r
            local.get $u
            local.get $m
            i64.and
            local.get $m
            i64.const 1
            i64.add
            i64.const 1
            i64.shr_u
            local.tee $h
            i64.gt_u
            local.get $u
            local.get $m
            i64.and
            local.get $h
            i64.eq
            local.get $r
            local.get $m
            i64.const 1
            i64.add
            i64.and
            i64.const 0
            i64.ne
            i32.and
            i32.or
            if i64
              local.get $r
              local.get $m
              i64.add
              i64.const 1
              i64.add
            else
              local.get $r
            end
        """
    # magnitude rounds up for negatives under floor and positives under ceil
    away = "i64.eqz\ni32.eqz" if mode == "floor" else "i64.eqz"
    return f"""
        local.get $s
        {away}
        if i64
          local.get $u
          local.get $m
          i64.add
        else
          local.get $u
        end
        {clear}
    """


def _define_rounding(fmt, mode):
    f = FORMATS[fmt]
    integral = f["bias"] + f["mant"]
    _define(f"{fmt}_{mode}", f"x:{fmt}", fmt, "u e s m r h", f"""
        {_load(fmt, 'x', 'u')}
        local.get $u
        i64.const {f['mant']}
        i64.shr_u
        i64.const {f['emax']:#x}
        i64.and
        local.set $e
        local.get $u
        i64.const {f['sign']}
        i64.shr_u
        local.set $s
        {_is_special(fmt, 'e')}
        local.get $u
        i64.const {(1 << f['mant']) - 1:#x}
        i64.and
        i64.const 0
        i64.ne
        i32.and
        if
          {_return_nan(fmt)}
        end
        local.get $e
        i64.const {integral}
        i64.ge_u
        if
          local.get $x
          return
        end
        local.get $e
        i64.const {f['bias']}
        i64.lt_u
        if
          {_round_small(fmt, mode)}
          {_from_bits(fmt)}
          return
        end
        i64.const 1
        i64.const {integral}
        local.get $e
        i64.sub
        i64.shl
        i64.const 1
        i64.sub
        local.tee $m
        local.get $u
        i64.and
        i64.eqz
        if
          local.get $x
          return
        end
        {_round_main(mode)}
        {_from_bits(fmt)}
    """)


for _fmt in ("f32", "f64"):
    for _mode in ("ceil", "floor", "trunc", "nearest"):
        _define_rounding(_fmt, _mode)


# -- conversions ------------------------------------------------------------

_define("f32_promote", "x:f32", "f64", "u e m s", f"""
    {_load('f32', 'x', 'u')}
    {_unpack('f32', 'u', 'e', 'm', 's')}
    {_is_special('f32', 'e')}
    if
      {_is_nonzero('m')}
      if
        {_return_nan('f64')}
      end
      {_signed('f64', 's', 0x7FF0000000000000)}
      f64.reinterpret_i64
      return
    end
    {_is_zero('f32', 'u')}
    if
      {_signed('f64', 's')}
      f64.reinterpret_i64
      return
    end
    {_hidden('f32', 'e', 'm')}
    local.get $s
    local.get $e
    i64.const 934
    i64.add
    local.get $m
    call @f64_pack
    f64.reinterpret_i64
""")

_define("f64_demote", "x:f64", "f32", "u e m s", f"""
    {_load('f64', 'x', 'u')}
    {_unpack('f64', 'u', 'e', 'm', 's')}
    {_is_special('f64', 'e')}
    if
      {_is_nonzero('m')}
      if
        {_return_nan('f32')}
      end
      {_signed('f32', 's', 0x7F800000)}
      {_from_bits('f32')}
      return
    end
    {_is_zero('f64', 'u')}
    if
      {_signed('f32', 's')}
      {_from_bits('f32')}
      return
    end
    {_hidden('f64', 'e', 'm')}
    local.get $s
    local.get $e
    i64.const 887
    i64.sub
    local.get $m
    call @f32_pack
    {_from_bits('f32')}
""")


def _define_from_int(fmt):
    _define(f"{fmt}_from_int", "sign m", "i64", "e", f"""
        local.get $m
        i64.eqz
        if
          i64.const 0
          return
        end
        i64.const {FORMATS[fmt]['offset']}
        local.set $e
        local.get $m
        i64.const 0
        i64.lt_s
        if
          ;; magnitude 2**63 and above: halve, keeping the lost bit sticky
          local.get $m
          i64.const 1
          i64.shr_u
          local.get $m
          i64.const 1
          i64.and
          i64.or
          local.set $m
          local.get $e
          i64.const 1
          i64.add
          local.set $e
        end
        local.get $sign
        local.get $e
        local.get $m
        call @{fmt}_pack
    """)
    _define(f"{fmt}_convert_i64_s", "v", fmt, "s", f"""
        local.get $v
        i64.const 63
        i64.shr_u
        local.set $s
        local.get $s
        i64.const 0
        local.get $v
        i64.sub
        local.get $v
        local.get $s
        i32.wrap_i64
        select
        call @{fmt}_from_int
        {_from_bits(fmt)}
    """)
    _define(f"{fmt}_convert_i64_u", "v", fmt, "", f"""
        i64.const 0
        local.get $v
        call @{fmt}_from_int
        {_from_bits(fmt)}
    """)


_define_from_int("f64")
_define_from_int("f32")


_OVERFLOW = "unreachable integer_overflow"


def _trunc_limits(width, signed):
    if width == 32:
        return f"""
            local.get $p
            i64.const 32
            i64.ge_u
            if
              {_OVERFLOW}
            end
        """
    if signed:
        return f"""
            local.get $p
            i64.const 63
            i64.ge_u
            if
              ;; only -2**63 itself fits
              local.get $p
              i64.const 63
              i64.eq
              local.get $m
              i64.eqz
              i32.and
              local.get $s
              i32.wrap_i64
              i32.and
              if
                i64.const 0x8000000000000000
                return
              end
              {_OVERFLOW}
            end
        """
    return f"""
        local.get $s
        i32.wrap_i64
        local.get $p
        i64.const 64
        i64.ge_u
        i32.or
        if
          {_OVERFLOW}
        end
    """


def _trunc_result(width, signed):
    if width == 64:
        if not signed:
            return "local.get $m"
        return """
            local.get $s
            i64.eqz
            if i64
              local.get $m
            else
              i64.const 0
              local.get $m
              i64.sub
            end
        """
    if not signed:
        return f"""
            local.get $s
            i32.wrap_i64
            local.get $m
            i64.const 0x100000000
            i64.ge_u
            i32.or
            if
              {_OVERFLOW}
            end
            local.get $m
            i32.wrap_i64
        """
    return f"""
        local.get $s
        i64.eqz
        if i64
          local.get $m
          i64.const 0x80000000
          i64.ge_u
          if
            {_OVERFLOW}
          end
          local.get $m
        else
          local.get $m
          i64.const 0x80000000
          i64.gt_u
          if
            {_OVERFLOW}
          end
          i64.const 0
          local.get $m
          i64.sub
        end
        i32.wrap_i64
    """


def _define_trunc(width, signed):
    name = f"i{width}_trunc_f64_{'s' if signed else 'u'}"
    _define(name, "x:f64", f"i{width}", "u e m s p", f"""
        {_load('f64', 'x', 'u')}
        {_unpack('f64', 'u', 'e', 'm', 's')}
        {_is_special('f64', 'e')}
        if
          local.get $m
          i64.eqz
          if
            {_OVERFLOW}
          end
          unreachable invalid_conversion_to_integer
        end
        local.get $e
        i64.const 1023
        i64.lt_u
        if
          i{width}.const 0
          return
        end
        ;; the integer part has p + 1 bits
        local.get $e
        i64.const 1023
        i64.sub
        local.set $p
        {_trunc_limits(width, signed)}
        local.get $m
        i64.const 0x10000000000000
        i64.or
        local.set $m
        local.get $p
        i64.const 52
        i64.ge_u
        if i64
          local.get $m
          local.get $p
          i64.const 52
          i64.sub
          i64.shl
        else
          local.get $m
          i64.const 52
          local.get $p
          i64.sub
          i64.shr_u
        end
        local.set $m
        {_trunc_result(width, signed)}
    """)


for _width in (32, 64):
    for _signed_trunc in (True, False):
        _define_trunc(_width, _signed_trunc)


# -- f32 arithmetic through f64 ---------------------------------------------

for _op in ("add", "mul", "div"):
    _define(f"f32_{_op}", "a:f32 b:f32", "f32", "", f"""
        local.get $a
        call @f32_promote
        local.get $b
        call @f32_promote
        call @f64_{_op}
        call @f64_demote
    """)

_define("f32_sqrt", "a:f32", "f32", "", """
    local.get $a
    call @f32_promote
    call @f64_sqrt
    call @f64_demote
""")


# -- rewriting --------------------------------------------------------------

def _rewrites():
    table = {}
    for fmt in ("f32", "f64"):
        for op in ("add", "mul", "div", "sqrt", "ceil", "floor", "trunc", "nearest"):
            table[f"{fmt}.{op}"] = (f"@{fmt}_{op}",)
        table[f"{fmt}.sub"] = (f"{fmt}.neg", f"@{fmt}_add")
        table[f"{fmt}.convert_i32_s"] = ("i64.extend_i32_s", f"@{fmt}_convert_i64_s")
        table[f"{fmt}.convert_i32_u"] = ("i64.extend_i32_u", f"@{fmt}_convert_i64_s")
        table[f"{fmt}.convert_i64_s"] = (f"@{fmt}_convert_i64_s",)
        table[f"{fmt}.convert_i64_u"] = (f"@{fmt}_convert_i64_u",)
    table["f64.promote_f32"] = ("@f32_promote",)
    table["f32.demote_f64"] = ("@f64_demote",)
    for ity in ("i32", "i64"):
        for sign in ("s", "u"):
            table[f"{ity}.trunc_f64_{sign}"] = (f"@{ity}_trunc_f64_{sign}",)
            table[f"{ity}.trunc_f32_{sign}"] = ("@f32_promote", f"@{ity}_trunc_f64_{sign}")
    return table


REWRITES = _rewrites()
SOFT_FLOAT_OPS = frozenset(REWRITES)


def required_helpers(ops):
    """Helper names needed by ``ops``, callees included, in definition order."""
    pending = [token[1:] for op in ops for token in REWRITES.get(op, ()) if token.startswith("@")]
    needed = set()
    while pending:
        name = pending.pop()
        if name not in needed:
            needed.add(name)
            pending.extend(HELPERS[name].callees)
    return [name for name in HELPERS if name in needed]


def _type_index(types, func_type):
    if func_type not in types:
        types.append(func_type)
    return types.index(func_type)


def lower_floats(module):
    """Rewrite float arithmetic into calls to appended helper functions.

    Returns ``module`` itself when nothing needs rewriting, otherwise a new,
    validated module whose defined functions are followed by the helpers.
    """
    ops = {instr.op for func in module.functions for instr in func.body if instr.op in REWRITES}
    if not ops:
        return module

    names = required_helpers(ops)
    lowered = replace(
        module,
        types=list(module.types),
        functions=list(module.functions),
        names=dict(module.names),
    )
    indices = {name: module.num_funcs + position for position, name in enumerate(names)}

    for position, func in enumerate(module.functions):
        if not any(instr.op in REWRITES for instr in func.body):
            continue
        body = []
        for instr in func.body:
            if instr.op not in REWRITES:
                body.append(instr)
                continue
            for token in REWRITES[instr.op]:
                if token.startswith("@"):
                    body.append(Instr("call", indices[token[1:]], offset=instr.offset))
                else:
                    body.append(Instr(token, offset=instr.offset))
        lowered.functions[position] = Function(func.type_index, list(func.locals), body, func.offset)

    for name in names:
        helper = HELPERS[name]
        lowered.functions.append(
            Function(
                _type_index(lowered.types, helper.func_type),
                [value_type for _, value_type in helper.locals],
                helper.instructions(indices),
            )
        )
        lowered.names[indices[name]] = f"softfloat.{name}"

    logger.debug("lowered %s with %d soft-float helpers", ", ".join(sorted(ops)), len(names))
    return validate_module(lowered)


__all__ = [
    "HELPERS",
    "Helper",
    "REWRITES",
    "SOFT_FLOAT_OPS",
    "lower_floats",
    "required_helpers",
]
