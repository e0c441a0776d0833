"""Tests for compiling and evaluating cipher fragments."""

import pytest

from conftest import PLAYER_SCRIPT, expected_n, expected_signature

from vidresolve.core.errors import CompileFailed, EvalFailed
from vidresolve.core.models import PlayerVersionKey, ScriptFragment
from vidresolve.core.sandbox import ScriptSandbox
from vidresolve.core.synthesizer import CipherSynthesizer

CIPHERTEXT = "AOq0QJ8wRQIhAKR3x7Pdq2ZK0tP1w-yY_kB5uL9sVfEgIgXr4mNa"


@pytest.fixture(scope="module")
def program():
    fragments = CipherSynthesizer().synthesize(PLAYER_SCRIPT)
    return ScriptSandbox().compile_program(PlayerVersionKey("test/player"), fragments)


def test_decode_signature_matches_reference_transform(program) -> None:
    assert program.decode_signature(CIPHERTEXT) == expected_signature(CIPHERTEXT)


def test_decode_n_matches_reference_transform(program) -> None:
    assert program.decode_n("abcdefghij") == expected_n("abcdefghij")


def test_decoding_is_idempotent(program) -> None:
    first = program.decode_signature(CIPHERTEXT)
    assert all(program.decode_signature(CIPHERTEXT) == first for _ in range(3))


def test_evaluations_do_not_share_state() -> None:
    sandbox = ScriptSandbox()
    compiled = sandbox.compile(ScriptFragment(
        entry="counter",
        source="var hits=0;var counter=function(a){hits++;return a+hits};",
    ))
    assert sandbox.evaluate(compiled, "x") == "x1"
    assert sandbox.evaluate(compiled, "x") == "x1"


def test_compile_rejects_syntax_errors_and_missing_entry() -> None:
    sandbox = ScriptSandbox()
    with pytest.raises(CompileFailed):
        sandbox.compile(ScriptFragment(entry="f", source="var f=function(a){return a"))
    with pytest.raises(CompileFailed):
        sandbox.compile(ScriptFragment(entry="f", source="var g=function(a){return a};"))
    with pytest.raises(CompileFailed):
        sandbox.compile(ScriptFragment(entry="f", source="   "))


def test_evaluate_rejects_exceptions_and_implausible_output() -> None:
    sandbox = ScriptSandbox()
    throwing = sandbox.compile(ScriptFragment(entry="f", source="var f=function(a){throw new Error('x')};"))
    with pytest.raises(EvalFailed):
        sandbox.evaluate(throwing, "abc")

    marker = sandbox.compile(ScriptFragment(entry="f", source="var f=function(a){return 'enhanced_except_'+a};"))
    with pytest.raises(EvalFailed):
        sandbox.evaluate(marker, "abc")

    number = sandbox.compile(ScriptFragment(entry="f", source="var f=function(a){return 42};"))
    with pytest.raises(EvalFailed):
        sandbox.evaluate(number, "abc")


def test_fragments_have_no_host_bridge() -> None:
    sandbox = ScriptSandbox()
    globals_check = sandbox.compile(ScriptFragment(
        entry="f",
        source="var f=function(a){return typeof call_python + '.' + typeof require};",
    ))
    assert sandbox.evaluate(globals_check, "x") == "undefined.undefined"
