import pytest

from tickflow.connection import ConnectionState, ConnectionStateMachine, InvalidTransition

S = ConnectionState


def test_happy_path_transitions():
    machine = ConnectionStateMachine("t1")
    for state in (S.CONNECTING, S.AUTHENTICATING, S.SUBSCRIBED, S.CLOSING, S.DISCONNECTED):
        machine.transition(state)
    assert machine.state is S.DISCONNECTED


@pytest.mark.parametrize(
    "path, bad",
    [
        ((), S.SUBSCRIBED),
        ((), S.AUTHENTICATING),
        ((S.CONNECTING,), S.SUBSCRIBED),
        ((S.CONNECTING, S.AUTHENTICATING, S.SUBSCRIBED), S.CONNECTING),
        ((S.CONNECTING, S.CLOSING), S.CONNECTING),
    ],
)
def test_illegal_transitions_raise(path, bad):
    machine = ConnectionStateMachine("t2")
    for state in path:
        machine.transition(state)
    with pytest.raises(InvalidTransition):
        machine.transition(bad)
    assert machine.state is (path[-1] if path else S.DISCONNECTED)


def test_require_checks_current_state():
    machine = ConnectionStateMachine("t3")
    machine.require(S.DISCONNECTED)
    with pytest.raises(InvalidTransition, match="expected subscribed"):
        machine.require(S.SUBSCRIBED)


def test_listeners_receive_old_and_new_state():
    machine = ConnectionStateMachine("t4")
    seen = []
    sub = machine.add_listener(seen.append)
    machine.transition(S.CONNECTING)
    sub.unsubscribe()
    machine.transition(S.DISCONNECTED)
    assert seen == [(S.DISCONNECTED, S.CONNECTING)]
