import pytest
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from casino_rounds.errors import (
    AlreadyResolvedError, ConflictError, IncompleteSettlementError, InvalidTransitionError,
    RoundNotFoundError, UnknownGameError,
)
from casino_rounds.fairness import hash_seed
from casino_rounds.models import Round, RoundStatus


def test_open_round(engine, clock):
    rnd = engine.rounds.open_round("color_prediction", seed="abc")
    assert rnd.status == RoundStatus.OPEN
    assert rnd.sequence_number == 1
    assert rnd.seed_hash == hash_seed("abc")
    assert (rnd.betting_closes_at - clock()).total_seconds() == 30
    assert engine.rounds.get_active_round("color_prediction").id == rnd.id

def test_only_one_active_round_per_game(engine):
    engine.rounds.open_round("color_prediction")
    with pytest.raises(ConflictError):
        engine.rounds.open_round("color_prediction")
    # other games are independent
    engine.rounds.open_round("roulette")

def test_database_rejects_second_active_round(engine, clock):
    first = engine.rounds.open_round("color_prediction")
    with engine.sessions() as session:
        session.add(Round(id="dup", game_type="color_prediction", sequence_number=2, status=RoundStatus.LOCKED,
                          seed="x", seed_hash=hash_seed("x"), opened_at=clock(), betting_closes_at=clock()))
        with pytest.raises(IntegrityError):
            session.commit()
    assert engine.rounds.get_active_round("color_prediction").id == first.id

def test_unknown_game_type(engine):
    with pytest.raises(UnknownGameError):
        engine.rounds.open_round("sports")

def test_full_lifecycle_and_sequence(engine, clock):
    first = engine.rounds.open_round("color_prediction")
    clock.advance(30)
    engine.rounds.lock_round(first.id)
    engine.rounds.resolve_round(first.id)
    engine.rounds.settle_round(first.id)
    second = engine.rounds.open_round("color_prediction")
    assert second.sequence_number == 2
    settled = engine.rounds.get_round(first.id)
    assert settled.status == RoundStatus.SETTLED
    assert settled.locked_at is not None and settled.resolved_at is not None and settled.settled_at is not None

def test_lock_is_taken_once(engine):
    rnd = engine.rounds.open_round("roulette")
    engine.rounds.lock_round(rnd.id)
    with pytest.raises(InvalidTransitionError):
        engine.rounds.lock_round(rnd.id)

def test_lock_unknown_round(engine):
    with pytest.raises(RoundNotFoundError):
        engine.rounds.lock_round("missing")

def test_resolve_requires_lock(engine):
    rnd = engine.rounds.open_round("roulette")
    with pytest.raises(InvalidTransitionError):
        engine.rounds.resolve_round(rnd.id)
    assert engine.rounds.get_round(rnd.id).outcome is None

def test_resolve_is_idempotent(engine):
    rnd = engine.rounds.open_round("roulette", seed="fixed")
    engine.rounds.lock_round(rnd.id)
    outcome = engine.rounds.resolve_round(rnd.id)
    assert engine.rounds.resolve_round(rnd.id) == outcome
    with pytest.raises(AlreadyResolvedError) as exc:
        engine.rounds.resolve_round(rnd.id, strict=True)
    assert exc.value.outcome == outcome
    stored = engine.rounds.get_round(rnd.id)
    assert stored.status == RoundStatus.RESOLVING and stored.outcome == outcome

def test_outcome_depends_only_on_seed(engine):
    outcomes = []
    for _ in range(2):
        rnd = engine.rounds.open_round("roulette", seed="same")
        engine.rounds.lock_round(rnd.id)
        outcomes.append(engine.rounds.resolve_round(rnd.id))
        engine.rounds.settle_round(rnd.id)
    assert outcomes[0] == outcomes[1]

def test_settle_requires_no_pending_bets(engine, fund, key):
    fund(engine, "alice", 1000)
    rnd = engine.rounds.open_round("color_prediction")
    engine.place_bet(rnd.id, "alice", 100, {"color": "red"}, key())
    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    with pytest.raises(IncompleteSettlementError):
        engine.rounds.settle_round(rnd.id)
    assert engine.rounds.get_round(rnd.id).status == RoundStatus.RESOLVING

def test_settle_round_is_noop_when_settled(engine):
    rnd = engine.rounds.open_round("roulette")
    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    first = engine.rounds.settle_round(rnd.id)
    again = engine.rounds.settle_round(rnd.id)
    assert again.settled_at == first.settled_at

def test_settle_requires_outcome(engine):
    rnd = engine.rounds.open_round("roulette")
    engine.rounds.lock_round(rnd.id)
    with pytest.raises(InvalidTransitionError):
        engine.rounds.settle_round(rnd.id)

def test_round_history_newest_first(engine):
    ids = []
    for _ in range(3):
        rnd = engine.rounds.open_round("roulette")
        engine.rounds.lock_round(rnd.id)
        engine.rounds.resolve_round(rnd.id)
        engine.rounds.settle_round(rnd.id)
        ids.append(rnd.id)
    engine.rounds.open_round("roulette")
    history = engine.get_round_history("roulette", limit=2)
    assert [r.id for r in history] == ids[::-1][:2]

def test_current_round_falls_back_to_latest(engine):
    assert engine.get_current_round("roulette") is None
    rnd = engine.rounds.open_round("roulette")
    assert engine.get_current_round("roulette").id == rnd.id
    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    engine.rounds.settle_round(rnd.id)
    current = engine.get_current_round("roulette")
    assert current.id == rnd.id and current.status == RoundStatus.SETTLED

def test_player_facing_round_queries_hide_the_seed(engine):
    rnd = engine.rounds.open_round("aviator", seed="crash-secret")
    for current in (engine.get_current_round("aviator"), engine.rounds.get_active_round("aviator")):
        assert current.id == rnd.id and current.seed_hash == hash_seed("crash-secret")
        assert "seed" not in current.__dict__
        with pytest.raises(SQLAlchemyError):
            current.seed
    assert engine.rounds.get_active_round("aviator", include_seed=True).seed == "crash-secret"

def test_pause_flag(engine, make_engine):
    assert engine.rounds.is_paused("roulette") is False
    engine.set_paused("roulette", True)
    assert engine.rounds.is_paused("roulette") is True
    engine.set_paused("roulette", False)
    assert engine.rounds.is_paused("roulette") is False
    paused_by_default = make_engine(overrides={"roulette": {"paused": True}})
    assert paused_by_default.rounds.is_paused("roulette") is True


def test_lifecycle_events(engine):
    seen = []
    engine.events.subscribe(lambda kind, payload: seen.append((kind, payload)))
    rnd = engine.rounds.open_round("roulette")
    engine.rounds.lock_round(rnd.id)
    outcome = engine.rounds.resolve_round(rnd.id)
    engine.rounds.settle_round(rnd.id)
    assert [kind for kind, _ in seen] == ["round_opened", "round_locked", "round_settled"]
    settled = seen[-1][1]
    assert settled["roundId"] == rnd.id and settled["outcome"] == outcome
    assert settled["sequenceNumber"] == 1 and settled["status"] == RoundStatus.SETTLED
    assert "seed" not in seen[0][1]

def test_failing_subscriber_does_not_affect_state(engine):
    def broken(kind, payload):
        raise RuntimeError("subscriber down")
    seen = []
    engine.events.subscribe(broken)
    engine.events.subscribe(lambda kind, payload: seen.append(kind), kinds=["round_locked"])
    rnd = engine.rounds.open_round("roulette")
    engine.rounds.lock_round(rnd.id)
    assert engine.rounds.get_round(rnd.id).status == RoundStatus.LOCKED
    assert seen == ["round_locked"]
