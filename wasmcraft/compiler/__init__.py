"""WebAssembly → command-function compiler pipeline.

| Stage                         | Purpose                               | Module            |
| ----------------------------- | ------------------------------------- | ----------------- |
| **Decoder**                   | binary → :class:`Module`              | `decoder.py`      |
| **Validator**                 | type-checks, annotates stack heights  | `validator.py`    |
| **CFG reconstructor**         | structured code → basic blocks        | `cfg.py`          |
| **Lowerer**                   | stack ops → scoreboard commands       | `lowering.py`     |
| **Emitter**                   | one command function per block        | `emitter.py`      |
| **Assembler**                 | runtime library, exports, `init`      | `assembler.py`    |
| **Soft float**                | float ops → integer helper functions  | `softfloat.py`    |
| **Simulator**                 | run the datapack                      | `commandvm.py`    |
| **Reference**                 | run the module on wasmtime            | `reference.py`    |
"""

from . import errors as _errors
from . import module as _module
from . import opcodes as _opcodes
from . import text as _text
from . import decoder as _decoder
from . import encoder as _encoder
from . import validator as _validator
from . import softfloat as _softfloat
from . import cfg as _cfg
from . import lir as _lir
from . import hostfuncs as _hostfuncs
from . import lowering as _lowering
from . import intrinsics as _intrinsics
from . import emitter as _emitter
from . import assembler as _assembler
from . import commandvm as _commandvm
from . import reference as _reference
from .errors import *  # noqa: F401,F403
from .module import *  # noqa: F401,F403
from .opcodes import *  # noqa: F401,F403
from .text import *  # noqa: F401,F403
from .decoder import *  # noqa: F401,F403
from .encoder import *  # noqa: F401,F403
from .validator import *  # noqa: F401,F403
from .softfloat import *  # noqa: F401,F403
from .cfg import *  # noqa: F401,F403
from .lir import *  # noqa: F401,F403
from .hostfuncs import *  # noqa: F401,F403
from .lowering import *  # noqa: F401,F403
from .intrinsics import *  # noqa: F401,F403
from .emitter import *  # noqa: F401,F403
from .assembler import *  # noqa: F401,F403
from .commandvm import *  # noqa: F401,F403
from .reference import *  # noqa: F401,F403

__all__ = []
for _submodule in (
    _errors,
    _module,
    _opcodes,
    _text,
    _decoder,
    _encoder,
    _validator,
    _softfloat,
    _cfg,
    _lir,
    _hostfuncs,
    _lowering,
    _intrinsics,
    _emitter,
    _assembler,
    _commandvm,
    _reference,
):
    __all__ += [name for name in getattr(_submodule, "__all__", []) if name not in __all__]
del _submodule
