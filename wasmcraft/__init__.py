"""
⛏ wasmcraft: WebAssembly modules as Minecraft datapacks.

| Layer                         | Purpose                               | Status  |
<------------------------------ + ------------------------------------- + -------->
| **Decoder & validator**       | Binary format, typing, stack heights  |   ✅    |
| **CFG reconstruction**        | Structured control → basic blocks     |   ✅    |
| **Lowering**                  | i32/i64/f32/f64 on 32-bit scoreboards |   ✅    |
| **Emission**                  | One command function per block        |   ✅    |
| **Assembly**                  | Runtime library, exports, init, tags  |   ✅    |
| **Budgeting & call stack**    | Tick deferral, storage frames, traps  |   ✅    |
| **Simulation**                | Command VM, wasmtime reference run   |   ✅    |
| **Analysis**                  | NetworkX / Graphviz / matplotlib CFGs |   ✅    |
| **Hash, diff & signatures**   | Digest identity, proof-of-origin      |   ✅    |
"""

from . import constants as _constants
from . import compiler as _compiler
from . import datapack as _datapack
from . import crypto as _crypto
from . import analysis as _analysis
from . import cli as _cli
from .constants import *  # noqa: F401,F403
from .compiler import *  # noqa: F401,F403
from .datapack import *  # noqa: F401,F403
from .crypto import *  # noqa: F401,F403
from .analysis import *  # noqa: F401,F403
from .cli import main, parse_args

__all__ = []
__all__ += getattr(_constants, "__all__", [])
__all__ += getattr(_compiler, "__all__", [])
__all__ += getattr(_datapack, "__all__", [])
__all__ += getattr(_crypto, "__all__", [])
__all__ += getattr(_analysis, "__all__", [])
__all__ += ["main", "parse_args"]
