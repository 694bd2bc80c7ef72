import pytest

from bellserver.decision import DEFAULT_EFFECTIVE_SOUNDS, DecisionEngine
from bellserver.protocol import DeviceIdentity
from bellserver.ranking import RankedRecord

DOOR = DeviceIdentity(name="Front door", uuid="abc-123")
HALL = DeviceIdentity(name="Hallway", uuid="def-456")


def _ranked(*pairs):
    return [RankedRecord(index=i, label=label, probability=p) for i, (label, p) in enumerate(pairs)]


@pytest.fixture
def engine(clock):
    return DecisionEngine(clock=clock)


def test_default_allow_list():
    assert DecisionEngine().effective_sounds == frozenset(DEFAULT_EFFECTIVE_SOUNDS)
    assert "Beep, bleep" in DEFAULT_EFFECTIVE_SOUNDS


def test_empty_batch_never_rings(engine):
    assert engine.decide(DOOR, []) is None


def test_music_masks_second_candidate(engine):
    event = engine.decide(DOOR, _ranked(("Music", 0.9), ("Knock", 0.41)))
    assert event is not None
    assert event.label == "Knock"
    assert event.probability == 0.41
    assert event.identity == DOOR


def test_music_second_candidate_needs_more_than_point_four(engine):
    assert engine.decide(DOOR, _ranked(("Music", 0.9), ("Knock", 0.4))) is None


def test_music_second_candidate_must_be_allowed(engine):
    assert engine.decide(DOOR, _ranked(("Music", 0.9), ("Speech", 0.8))) is None


def test_music_alone_uses_top_record(engine):
    assert engine.decide(DOOR, _ranked(("Music", 0.99))) is None
    allow_music = DecisionEngine(effective_sounds=["Music"])
    assert allow_music.decide(DOOR, _ranked(("Music", 0.99))) is not None


def test_top_threshold_boundary_is_excluded(engine):
    assert engine.decide(DOOR, _ranked(("Knock", 0.5))) is None
    assert engine.decide(DOOR, _ranked(("Knock", 0.5001))) is not None


def test_top_label_must_be_allowed(engine):
    assert engine.decide(DOOR, _ranked(("Speech", 0.99), ("Knock", 0.9))) is None


def test_unresolved_label_never_matches(engine):
    assert engine.decide(DOOR, _ranked(("", 0.99))) is None
    assert engine.decide(DOOR, _ranked(("Music", 0.9), ("", 0.8))) is None
    lenient = DecisionEngine(effective_sounds=["", "Knock"])
    assert lenient.decide(DOOR, _ranked(("", 0.99))) is None


def test_cooldown_suppresses_then_rearms(engine, clock):
    batch = _ranked(("Knock", 0.9))
    assert engine.decide(DOOR, batch) is not None
    clock.advance(0.5)
    assert engine.decide(DOOR, batch) is None
    clock.advance(1.0)  # 1500 ms after the first ring
    assert engine.decide(DOOR, batch) is not None


def test_cooldown_boundary_is_excluded(engine, clock):
    batch = _ranked(("Alarm", 0.9))
    assert engine.decide(DOOR, batch) is not None
    clock.advance(1.0)
    assert engine.decide(DOOR, batch) is None
    clock.advance(0.001)
    assert engine.decide(DOOR, batch) is not None


def test_suppressed_match_does_not_extend_cooldown(engine, clock):
    batch = _ranked(("Ringtone", 0.9))
    first = engine.decide(DOOR, batch)
    clock.advance(0.9)
    assert engine.decide(DOOR, batch) is None
    clock.advance(0.2)
    second = engine.decide(DOOR, batch)
    assert second is not None
    assert second.at_s - first.at_s == pytest.approx(1.1)


def test_cooldown_is_per_device(engine, clock):
    batch = _ranked(("Knock", 0.9))
    assert engine.decide(DOOR, batch) is not None
    assert engine.decide(HALL, batch) is not None
    clock.advance(0.1)
    assert engine.decide(DOOR, batch) is None
    assert engine.decide(HALL, batch) is None


def test_is_active_window(engine, clock):
    assert engine.is_active(DOOR.uuid) is False
    engine.decide(DOOR, _ranked(("Knock", 0.9)))
    assert engine.is_active(DOOR.uuid) is True
    clock.advance(4.999)
    assert engine.is_active(DOOR.uuid) is True
    clock.advance(0.002)
    assert engine.is_active(DOOR.uuid) is False
    assert engine.is_active(HALL.uuid) is False


def test_non_matching_batch_leaves_state_untouched(engine):
    engine.decide(DOOR, _ranked(("Speech", 0.99)))
    assert engine.state(DOOR.uuid) is None


def test_windows_are_configurable(clock):
    engine = DecisionEngine(ring_cooldown_s=3.0, active_window_s=0.5, clock=clock)
    batch = _ranked(("Knock", 0.9))
    assert engine.decide(DOOR, batch) is not None
    clock.advance(1.0)
    assert engine.is_active(DOOR.uuid) is False
    assert engine.decide(DOOR, batch) is None
    clock.advance(2.5)
    assert engine.decide(DOOR, batch) is not None


def test_ring_event_json():
    event = DecisionEngine().decide(DOOR, _ranked(("Knock", 0.75)))
    assert event.to_json() == {
        "type": "ring",
        "device": {"name": "Front door", "uuid": "abc-123"},
        "label": "Knock",
        "probability": 0.75,
    }
