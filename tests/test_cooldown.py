"""Per-POI cooldown tracking."""

from narrator.cooldown import CooldownStore, format_cooldown, is_cooling_down
from narrator.store import COOLDOWN_TRACKER, KeyValueStore

PERIOD = 30 * 60 * 1000


def test_never_played_can_play(kv, clock):
    cooldowns = CooldownStore(kv, clock=clock)
    assert cooldowns.can_play("a")
    assert cooldowns.remaining("a") == 0
    assert cooldowns.time_since_last_play("a") is None


def test_cooldown_lifecycle(kv, clock):
    cooldowns = CooldownStore(kv, period_ms=PERIOD, clock=clock)
    cooldowns.mark_as_played("a")
    assert not cooldowns.can_play("a")

    previous = cooldowns.remaining("a")
    assert previous == PERIOD
    for _ in range(29):
        clock.advance(60_000)
        remaining = cooldowns.remaining("a")
        assert remaining <= previous
        assert not cooldowns.can_play("a")
        previous = remaining

    clock.advance(59_999)
    assert not cooldowns.can_play("a")
    clock.advance(1)
    assert cooldowns.can_play("a")
    assert cooldowns.remaining("a") == 0
    clock.advance(60_000)
    assert cooldowns.remaining("a") == 0


def test_mark_as_played_resets_clock(kv, clock):
    cooldowns = CooldownStore(kv, period_ms=PERIOD, clock=clock)
    cooldowns.mark_as_played("a")
    clock.advance(PERIOD - 1000)
    cooldowns.mark_as_played("a")
    clock.advance(2000)
    assert not cooldowns.can_play("a")
    assert cooldowns.time_since_last_play("a") == 2000


def test_list_active_and_filter(kv, clock):
    cooldowns = CooldownStore(kv, period_ms=PERIOD, clock=clock)
    cooldowns.mark_as_played("a")
    cooldowns.mark_as_played("b", timestamp_ms=clock() - PERIOD - 1)
    assert cooldowns.list_active() == ["a"]
    assert cooldowns.filter_playable(["a", "b", "c"]) == ["b", "c"]


def test_clear_and_clear_all(kv, clock):
    cooldowns = CooldownStore(kv, clock=clock)
    cooldowns.mark_as_played("a")
    cooldowns.mark_as_played("b")
    cooldowns.clear("a")
    assert cooldowns.can_play("a")
    assert not cooldowns.can_play("b")
    cooldowns.clear_all()
    assert cooldowns.can_play("b")
    assert kv.get(COOLDOWN_TRACKER) is None


def test_survives_restart(tmp_path, logger, clock):
    db = str(tmp_path / "state.db")
    first = KeyValueStore(db, logger=logger)
    CooldownStore(first, clock=clock).mark_as_played("a")
    first.close()

    second = KeyValueStore(db, logger=logger)
    assert not CooldownStore(second, clock=clock).can_play("a")
    second.close()


def test_timestamp_zero_is_a_real_play(kv):
    cooldowns = CooldownStore(kv, period_ms=PERIOD, clock=lambda: 1000)
    cooldowns.mark_as_played("a", timestamp_ms=0)
    assert not cooldowns.can_play("a")
    assert cooldowns.last_played("a") == 0
    assert cooldowns.remaining("a") == PERIOD - 1000
    assert cooldowns.list_active() == ["a"]


def test_is_cooling_down():
    assert not is_cooling_down(None, 1000, PERIOD)
    assert is_cooling_down(0, 1000, PERIOD)
    assert is_cooling_down(1000, 1000 + PERIOD - 1, PERIOD)
    assert not is_cooling_down(1000, 1000 + PERIOD, PERIOD)


def test_format_cooldown():
    assert format_cooldown(90 * 60 * 1000) == "1h 30m"
    assert format_cooldown(2 * 3600 * 1000) == "2h"
    assert format_cooldown(5 * 60 * 1000) == "5m"
    assert format_cooldown(42_000) == "42s"
