"""Subscription registry tests."""

from concurrent.futures import ThreadPoolExecutor

from pollcast.envelope import CallbackHandler
from pollcast.registry import Snapshot, SubscriptionRegistry


def _handler():
    return CallbackHandler(lambda envelope: None)


def test_add_reports_changes():
    registry = SubscriptionRegistry("o")
    assert registry.add(["news"], ["alerts"])
    assert registry.channels() == ["news"]
    assert registry.groups() == ["alerts"]
    assert not registry.is_empty()
    assert "news" in registry and "alerts" in registry


def test_add_is_idempotent_but_updates_handler_and_state():
    registry = SubscriptionRegistry("o")
    registry.add(["news"])
    handler = _handler()
    assert not registry.add(["news"], handler=handler, state={"mood": "ok"})
    assert registry.handler_for("news") is handler
    assert registry.snapshot().state == {"news": {"mood": "ok"}}


def test_add_without_handler_keeps_existing_override():
    registry = SubscriptionRegistry("o")
    handler = _handler()
    registry.add(["news"], handler=handler)
    registry.add(["news"])
    assert registry.handler_for("news") is handler


def test_add_accepts_generators():
    registry = SubscriptionRegistry("o")
    assert registry.add((name for name in ["a", "b"]))
    assert sorted(registry.channels()) == ["a", "b"]


def test_remove_is_idempotent():
    registry = SubscriptionRegistry("o")
    registry.add(["news"])
    assert registry.remove(["news"])
    assert not registry.remove(["news"])
    assert not registry.remove(["never-added"])
    assert registry.is_empty()


def test_remove_announces_dropped_channels_only():
    calls = []
    registry = SubscriptionRegistry("o", on_leave=lambda c, g: calls.append((c, g)))
    registry.add(["news", "sports"], ["alerts"])
    registry.remove(["news", "unknown"], ["alerts"])
    assert calls == [(["news"], ["alerts"])]


def test_removing_only_groups_sends_no_leave():
    calls = []
    registry = SubscriptionRegistry("o", on_leave=lambda c, g: calls.append((c, g)))
    registry.add(groups=["alerts"])
    assert registry.remove(groups=["alerts"])
    assert calls == []


def test_leave_hook_failure_is_not_raised():
    def broken(channels, groups):
        raise RuntimeError("network down")

    registry = SubscriptionRegistry("o", on_leave=broken)
    registry.add(["news"])
    assert registry.remove(["news"])
    assert registry.is_empty()


def test_snapshot_is_sorted_and_immutable():
    registry = SubscriptionRegistry("o")
    registry.add(["zeta", "alpha"], ["g2", "g1"], state={"k": 1})
    snap = registry.snapshot()
    assert snap.channels == ("alpha", "zeta")
    assert snap.groups == ("g1", "g2")
    registry.add(["beta"])
    assert snap.channels == ("alpha", "zeta")
    assert set(snap.state) == {"alpha", "zeta", "g1", "g2"}


def test_state_param_is_compact_and_sorted():
    snap = Snapshot(channels=("b", "a"), state={"b": {"y": 2, "x": 1}, "a": {"z": 0}})
    assert snap.state_param() == '{"a":{"z":0},"b":{"x":1,"y":2}}'
    assert Snapshot(channels=("a",)).state_param() is None


def test_set_state_updates_subscribed_names_only():
    registry = SubscriptionRegistry("o")
    registry.add(["news"], ["alerts"])
    updated = registry.set_state({"away": True}, ["news", "other"], ["alerts"])
    assert updated == ["news", "alerts"]
    assert registry.snapshot().state == {"news": {"away": True}, "alerts": {"away": True}}
    registry.set_state(None, ["news"])
    assert registry.snapshot().state == {"alerts": {"away": True}}


def test_caller_state_dict_is_copied():
    registry = SubscriptionRegistry("o")
    state = {"mood": "ok"}
    registry.add(["news", "sports"], state=state)
    state["mood"] = "changed"
    registry.snapshot().state["news"]["extra"] = 1
    assert registry.snapshot().state == {"news": {"mood": "ok"}, "sports": {"mood": "ok"}}

    update = {"away": True}
    registry.set_state(update, ["news"])
    update["away"] = False
    assert registry.snapshot().state["news"] == {"away": True}


def test_handler_resolution_order():
    registry = SubscriptionRegistry("o")
    channel_handler, group_handler = _handler(), _handler()
    registry.add(["news"], handler=channel_handler)
    registry.add(groups=["feeds"], handler=group_handler)
    registry.add(["plain"])
    assert registry.handler_for("news", "feeds") is channel_handler
    assert registry.handler_for("sports", "feeds") is group_handler
    assert registry.handler_for("plain") is None
    assert registry.handler_for("sports") is None


def test_clear_drops_everything_silently():
    calls = []
    registry = SubscriptionRegistry("o", on_leave=lambda c, g: calls.append(c))
    registry.add(["news"], ["alerts"])
    registry.clear()
    assert registry.is_empty()
    assert calls == []


def test_concurrent_adds_from_threads():
    registry = SubscriptionRegistry("o")
    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: registry.add([f"ch-{i}"]), range(200)))
    assert len(registry.snapshot().channels) == 200
