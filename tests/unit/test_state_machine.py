import pytest

from flowmark.exceptions import StateMachineDefinitionError
from flowmark.statemachine import (
    GUARD_REJECTED,
    NO_TRANSITION,
    StateMachineBuilder,
    StateMachineExecutor,
)


def order_machine(calls=None):
    calls = calls if calls is not None else []

    def leave_new(ctx):
        calls.append("exit-new")

    def charge(ctx):
        calls.append("charge")

    async def enter_paid(ctx):
        calls.append("enter-paid")

    return (
        StateMachineBuilder("order")
        .initial("new")
        .state("new", on_exit=leave_new)
        .state("paid", on_entry=enter_paid)
        .state("shipped", terminal=True)
        .state("cancelled", terminal=True)
        .transition("new", "pay", "paid", action=charge)
        .transition("paid", "ship", "shipped", guard=lambda ctx: ctx["stock"] > 0)
        .transition("new", "cancel", "cancelled")
        .transition("paid", "cancel", "cancelled")
        .build()
    )


@pytest.mark.asyncio
async def test_fire_runs_exit_transition_and_entry_actions_in_order():
    calls = []
    executor = StateMachineExecutor(order_machine(calls))

    result = await executor.fire("new", "pay", {})

    assert result.is_success
    assert result.previous_state == "new"
    assert result.new_state == "paid"
    assert calls == ["exit-new", "charge", "enter-paid"]
    assert result.executed_actions == [
        "exit:leave_new",
        "transition:charge",
        "entry:enter_paid",
    ]


@pytest.mark.asyncio
async def test_unknown_trigger_leaves_state_unchanged():
    executor = StateMachineExecutor(order_machine())

    result = await executor.fire("shipped", "pay")

    assert not result.is_success
    assert result.error_code == NO_TRANSITION
    assert result.new_state == "shipped"


@pytest.mark.asyncio
async def test_guard_rejection_reports_error_code():
    executor = StateMachineExecutor(order_machine())

    rejected = await executor.fire("paid", "ship", {"stock": 0})
    accepted = await executor.fire("paid", "ship", {"stock": 3})

    assert rejected.error_code == GUARD_REJECTED
    assert rejected.new_state == "paid"
    assert accepted.new_state == "shipped"


@pytest.mark.asyncio
async def test_first_passing_guard_wins_in_declaration_order():
    machine = (
        StateMachineBuilder("tiers")
        .initial("idle")
        .state("idle")
        .state("gold", terminal=True)
        .state("silver", terminal=True)
        .transition("idle", "rate", "gold", guard=lambda score: score > 90)
        .transition("idle", "rate", "silver", guard=lambda score: score > 50)
        .build()
    )
    executor = StateMachineExecutor(machine)

    assert (await executor.fire("idle", "rate", 95)).new_state == "gold"
    assert (await executor.fire("idle", "rate", 60)).new_state == "silver"
    assert (await executor.fire("idle", "rate", 10)).error_code == GUARD_REJECTED


@pytest.mark.asyncio
async def test_async_guard_is_awaited():
    async def allowed(ctx):
        return ctx == "yes"

    machine = (
        StateMachineBuilder()
        .initial("a")
        .state("a")
        .state("b", terminal=True)
        .transition("a", "go", "b", guard=allowed)
        .build()
    )
    executor = StateMachineExecutor(machine)

    assert (await executor.fire("a", "go", "yes")).is_success
    assert not (await executor.fire("a", "go", "no")).is_success


@pytest.mark.asyncio
async def test_guard_exception_propagates():
    def broken(ctx):
        raise RuntimeError("guard failed")

    machine = (
        StateMachineBuilder()
        .initial("a")
        .state("a")
        .state("b", terminal=True)
        .transition("a", "go", "b", guard=broken)
        .build()
    )

    with pytest.raises(RuntimeError):
        await StateMachineExecutor(machine).fire("a", "go")


def test_available_transitions_and_can_fire():
    machine = order_machine()
    executor = StateMachineExecutor(machine)

    triggers = {t.trigger for t in machine.get_available_transitions("paid")}

    assert triggers == {"ship", "cancel"}
    assert executor.can_fire("new", "pay")
    assert not executor.can_fire("shipped", "pay")
    assert machine.is_terminal("shipped")
    assert not machine.is_terminal("new")


def test_build_rejects_undeclared_states():
    builder = (
        StateMachineBuilder("broken")
        .initial("start")
        .state("start")
        .transition("start", "go", "missing")
    )

    with pytest.raises(StateMachineDefinitionError) as exc:
        builder.build()
    assert any("missing" in error for error in exc.value.errors)


def test_build_requires_initial_state():
    with pytest.raises(StateMachineDefinitionError):
        StateMachineBuilder().state("a").build()


def test_build_warns_about_unreachable_and_missing_terminal_states():
    machine = (
        StateMachineBuilder("warnings")
        .initial("a")
        .state("a")
        .state("b")
        .state("island")
        .transition("a", "go", "b")
        .build()
    )

    assert "no terminal state declared" in machine.warnings
    assert any("'island' is unreachable" in w for w in machine.warnings)
    assert machine.reachable_states() == {"a", "b"}
