# tests/test_conditions.py
from levelci.conditions import (
    Always,
    Cancelled,
    Failure,
    RawPredicate,
    Success,
    evaluate,
    parse_condition,
    run_shell_predicate,
)


def test_parse_reserved_names():
    assert parse_condition("success()") == Success()
    assert parse_condition(" failure() ") == Failure()
    assert parse_condition("always()") == Always()
    assert parse_condition("cancelled()") == Cancelled()


def test_parse_defaults_to_success():
    assert parse_condition(None) == Success()
    assert parse_condition("   ") == Success()


def test_parse_anything_else_is_raw_predicate():
    cond = parse_condition('[ "$BRANCH" = main ]')
    assert cond == RawPredicate('[ "$BRANCH" = main ]')
    assert str(cond) == '[ "$BRANCH" = main ]'


def test_success_and_failure_follow_the_flag():
    assert evaluate("success()", failed=False) is True
    assert evaluate("success()", failed=True) is False
    assert evaluate("failure()", failed=False) is False
    assert evaluate("failure()", failed=True) is True


def test_always_runs_in_every_state():
    for failed in (False, True):
        for cancelled in (False, True):
            assert evaluate("always()", failed=failed, cancelled=cancelled) is True


def test_cancellation_blocks_everything_but_always_and_cancelled():
    assert evaluate("success()", failed=False, cancelled=True) is False
    assert evaluate("failure()", failed=True, cancelled=True) is False
    assert evaluate("cancelled()", failed=False, cancelled=True) is True
    assert evaluate("cancelled()", failed=False, cancelled=False) is False
    calls = []
    assert evaluate("true", failed=False, cancelled=True, predicate=calls.append) is False
    assert calls == []


def test_raw_predicate_goes_through_runner():
    seen = []

    def runner(expr):
        seen.append(expr)
        return expr == "yes"

    assert evaluate("yes", failed=True, predicate=runner) is True
    assert evaluate("no", failed=False, predicate=runner) is False
    assert seen == ["yes", "no"]


def test_shell_predicate_uses_exit_status_and_env():
    assert run_shell_predicate("true") is True
    assert run_shell_predicate("false") is False
    assert run_shell_predicate('[ "$DEPLOY" = 1 ]', env={"DEPLOY": "1", "PATH": "/usr/bin:/bin"}) is True
    assert run_shell_predicate('[ "$DEPLOY" = 1 ]', env={"DEPLOY": "0", "PATH": "/usr/bin:/bin"}) is False


def test_success_stays_false_once_failed():
    # the flag is monotonic: a later success does not reset it
    failed = False
    results = []
    for exit_code in (0, 1, 0, 0):
        results.append(evaluate("success()", failed=failed))
        if exit_code != 0:
            failed = True
    assert results == [True, True, False, False]
