import pytest

from wasmcraft.compiler import (
    CommandError,
    CommandFunction,
    CommandLimitExceeded,
    CommandVM,
    UnsetScoreError,
    parse_command,
    parse_snbt,
)
from wasmcraft.datapack import LoadedDatapack


def make_vm(functions, tick=(), **kwargs):
    """A VM over hand-written functions in namespace ``t``; ``t:init`` is the load tag."""
    functions = {"t:init": ["scoreboard objectives add wasm dummy"], **functions}
    pack = LoadedDatapack(
        "t",
        {name: CommandFunction(name, list(commands)) for name, commands in functions.items()},
        {"exports": {}, "traps": {}},
        ["t:init"],
        list(tick),
    )
    return CommandVM(pack, **kwargs)


def test_scoreboard_arithmetic_wraps_and_floors():
    vm = make_vm({})
    vm.set_score("%a", 2147483647)
    vm.run_command("scoreboard players add %a wasm 1")
    assert vm.score("%a") == -2147483648

    vm.set_score("%a", -7)
    vm.set_score("%b", 2)
    vm.run_command("scoreboard players operation %a wasm /= %b wasm")
    assert vm.score("%a") == -4
    vm.set_score("%a", -7)
    vm.run_command("scoreboard players operation %a wasm %= %b wasm")
    assert vm.score("%a") == 1

    vm.set_score("%z", 0)
    vm.run_command("scoreboard players operation %a wasm /= %z wasm")
    assert vm.score("%a") == 1

    vm.set_score("%a", 65536)
    vm.run_command("scoreboard players operation %a wasm *= %a wasm")
    assert vm.score("%a") == 0
    vm.run_command("scoreboard players operation %a wasm > %b wasm")
    assert vm.score("%a") == 2


def test_execute_store_semantics():
    vm = make_vm({})
    vm.set_score("%y", 5)
    vm.run_command("execute store result score %x wasm if score %y wasm matches 5")
    assert vm.score("%x") == 1

    vm.run_command("execute store result score %x wasm if score %y wasm matches 6")
    assert vm.score("%x") == 0

    vm.set_score("%x", 77)
    vm.run_command("execute store result score %x wasm if score %y wasm matches 6 run scoreboard players get %y wasm")
    assert vm.score("%x") == 0

    vm.set_score("%z", 77)
    vm.run_command("execute if score %y wasm matches 6 store result score %z wasm run scoreboard players get %y wasm")
    assert vm.score("%z") == 77


def test_function_return_value_is_stored():
    vm = make_vm(
        {
            "t:five": ["scoreboard players set %side wasm 1", "return 5", "scoreboard players set %side wasm 2"],
            "t:caller": ["execute store result score %x wasm run function t:five"],
        }
    )
    vm.run_function("t:caller")
    assert vm.score("%x") == 5
    assert vm.score("%side") == 1


def test_tail_calls_replace_the_frame():
    vm = make_vm(
        {
            "t:count": [
                "scoreboard players remove %n wasm 1",
                "execute if score %n wasm matches 1.. run return run function t:count",
                "scoreboard players add %after wasm 1",
            ],
        }
    )
    vm.set_score("%n", 5000)
    vm.set_score("%after", 0)
    vm.run_function("t:count")
    assert vm.score("%n") == 0
    assert vm.score("%after") == 1
    assert vm.executed["t:count"] == 5000


def test_command_limit_per_invocation():
    vm = make_vm({"t:spin": ["return run function t:spin"]}, max_commands=100)
    with pytest.raises(CommandLimitExceeded) as info:
        vm.run_function("t:spin")
    assert info.value.limit == 100


def test_schedule_runs_after_tick_functions():
    vm = make_vm(
        {
            "t:start": ["schedule function t:later 2t append"],
            "t:later": ["data modify storage t:log order append value \"later\""],
            "t:every": ["data modify storage t:log order append value \"tick\""],
        },
        tick=["t:every"],
    )
    vm.run_function("t:start")
    vm.tick()
    assert vm.get_storage("t:log", "order") == ["tick"]
    vm.tick()
    assert vm.get_storage("t:log", "order") == ["tick", "tick", "later"]
    assert vm.scheduled == []


def test_schedule_replace_keeps_one_entry():
    vm = make_vm({"t:later": ["say hi"]})
    vm.run_command("schedule function t:later 5t")
    vm.run_command("schedule function t:later 1t")
    assert vm.scheduled == [(1, "t:later")]


def test_macro_functions():
    vm = make_vm(
        {
            "t:set": ["$scoreboard players set %m wasm $(v)"],
            "t:go": ["$return run function $(k)"],
            "t:target": ["scoreboard players set %hit wasm 1"],
        }
    )
    vm.run_command("function t:set {v:7}")
    assert vm.score("%m") == 7

    vm.run_command('data modify storage t:rt frame set value {k:"t:target"}')
    vm.run_command("function t:go with storage t:rt frame")
    assert vm.score("%hit") == 1

    with pytest.raises(CommandError, match="without arguments"):
        vm.run_function("t:set")
    with pytest.raises(CommandError, match="missing macro argument"):
        vm.run_command("function t:set {w:1}")


def test_strict_mode_rejects_unset_scores_and_failed_storage():
    vm = make_vm({})
    vm.set_score("%a", 1)
    with pytest.raises(UnsetScoreError):
        vm.run_command("scoreboard players operation %a wasm += %missing wasm")
    with pytest.raises(CommandError):
        vm.run_command("data get storage t:s nothing")

    lenient = make_vm({}, strict=False)
    lenient.set_score("%a", 1)
    lenient.run_command("scoreboard players operation %a wasm += %missing wasm")
    assert lenient.score("%a") == 1
    assert lenient.run_command("data get storage t:s nothing") is None


def test_storage_lists_and_paths():
    vm = make_vm({})
    vm.run_command("data modify storage t:s pages set value [[I;1,2],[I;3,4]]")
    vm.run_command("execute store result storage t:s pages[1][0] int 1 run scoreboard players set %v wasm -9")
    assert vm.get_storage("t:s", "pages") == [[1, 2], [-9, 4]]

    vm.run_command("data modify storage t:s stack set value []")
    vm.run_command('data modify storage t:s stack append value {k:"t:a",l0:5}')
    vm.run_command("data modify storage t:s stack append from storage t:s stack[0]")
    assert vm.run_command("data get storage t:s stack[-1].l0") == 5
    vm.run_command("data remove storage t:s stack[-1]")
    assert len(vm.get_storage("t:s", "stack")) == 1
    assert vm.run_command("execute if data storage t:s stack[0] run return 3") == 3


def test_chat_renders_scores_and_blocks():
    vm = make_vm({})
    vm.set_score("%s0", 42)
    vm.run_command('tellraw @a ["",{"score":{"name":"%s0","objective":"wasm"}},{"text":"!"}]')
    vm.run_command("setblock 1 2 3 stone")
    vm.run_command("execute if block 1 2 3 minecraft:stone run scoreboard players set %found wasm 1")
    assert vm.chat == ["42!"]
    assert vm.block_at(1, 2, 3) == "minecraft:stone"
    assert vm.score("%found") == 1


def test_parsing_helpers():
    assert parse_snbt('{k:"ns:f0/b1",l0:-3,pages:[I;1,2],f:1.5f}') == {
        "k": "ns:f0/b1",
        "l0": -3,
        "pages": [1, 2],
        "f": 1.5,
    }
    assert parse_command("scoreboard players remove %budget wasm 1") == (
        "players_add", "%budget", "wasm", -1, False,
    )
    with pytest.raises(CommandError, match="unsupported command"):
        parse_command("kill @e")


def test_fill_and_clone_regions():
    vm = make_vm({})
    assert vm.run_command("fill 2 0 0 0 1 1 minecraft:stone") == 12
    vm.run_command("setblock 1 0 0 dirt")
    assert vm.run_command("clone 0 0 0 2 1 1 10 0 0") == 12
    assert vm.block_at(11, 0, 0) == "minecraft:dirt"
    assert vm.block_at(12, 1, 1) == "minecraft:stone"

    vm.run_command("fill 0 1 0 2 1 1 air")
    vm.run_command("setblock 21 1 0 cobblestone")
    assert vm.run_command("clone 0 0 0 2 1 1 20 0 0 masked") == 6
    assert vm.block_at(21, 0, 0) == "minecraft:dirt"
    assert vm.block_at(21, 1, 0) == "minecraft:cobblestone"

    with pytest.raises(CommandError, match="overlap"):
        vm.run_command("clone 0 0 0 2 1 1 1 1 1")
    with pytest.raises(CommandError, match="too many blocks"):
        vm.run_command("fill 0 0 0 40 40 40 stone")
    lenient = make_vm({}, strict=False)
    lenient.run_command("fill 0 0 0 40 40 40 stone")
    assert lenient.block_at(0, 0, 0) == "minecraft:air"
