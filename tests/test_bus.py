from tickflow.bus import ListenerRegistry


def test_publish_counts_successful_deliveries(caplog):
    caplog.set_level("WARNING")
    reg = ListenerRegistry("test")
    got = []
    reg.add(got.append)
    reg.add(lambda m: 1 / 0)
    assert reg.publish("x") == 1
    assert got == ["x"]
    assert "test callback" in caplog.text


def test_subscription_as_context_manager():
    reg = ListenerRegistry()
    got = []
    with reg.add(got.append) as sub:
        reg.publish(1)
        assert sub.active
    reg.publish(2)
    assert got == [1]
    assert not sub.active
    assert len(reg) == 0


def test_callback_may_unsubscribe_during_publish():
    reg = ListenerRegistry()
    got = []
    subs = []

    def once(msg):
        got.append(msg)
        subs[0].unsubscribe()

    subs.append(reg.add(once))
    reg.add(got.append)
    reg.publish("a")
    reg.publish("b")
    assert got == ["a", "a", "b"]


def test_clear_removes_everything():
    reg = ListenerRegistry()
    reg.add(print)
    reg.add(print)
    reg.clear()
    assert reg.publish("x") == 0
