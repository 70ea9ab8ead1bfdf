from casino_rounds.fairness import hash_seed
from casino_rounds.models import RoundStatus


def test_seed_hidden_until_settled(engine):
    rnd = engine.rounds.open_round("roulette", seed="secret-seed")
    result = engine.verify_round(rnd.id)
    assert result["status"] == "seed_not_revealed_yet"
    assert result["seed_hash"] == hash_seed("secret-seed")
    assert "seed" not in result

    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    assert "seed" not in engine.verify_round(rnd.id)

def test_settled_round_verifies(engine):
    rnd = engine.rounds.open_round("andar_bahar", seed="reveal-me")
    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    engine.settle(rnd.id)
    result = engine.verify_round(rnd.id)
    assert result["status"] == "verifiable"
    assert result["seed"] == "reveal-me"
    assert result["hash_matches"] and result["outcome_matches"]

def test_jackpot_verifies_from_stored_entries(engine, clock, fund, key):
    for user in ("alice", "bob"):
        fund(engine, user, 1000)
    rnd = engine.rounds.open_round("jackpot")
    engine.place_bet(rnd.id, "alice", 300, {}, key())
    clock.advance(1)
    engine.place_bet(rnd.id, "bob", 700, {}, key())
    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    engine.settle(rnd.id)
    result = engine.verify_round(rnd.id)
    assert result["outcome_matches"]
    assert [e["user_id"] for e in result["context"]["entries"]] == ["alice", "bob"]

def test_rtp_report(engine, fund, seed_for, key):
    fund(engine, "alice", 1000)
    seed = seed_for(engine, "color_prediction", lambda o: o["color"] == "red")
    rnd = engine.rounds.open_round("color_prediction", seed=seed)
    engine.place_bet(rnd.id, "alice", 100, {"color": "red"}, key())
    engine.place_bet(rnd.id, "alice", 100, {"color": "green"}, key())
    engine.rounds.lock_round(rnd.id)
    engine.rounds.resolve_round(rnd.id)
    assert engine.settle(rnd.id).status == RoundStatus.SETTLED
    report = engine.rtp_report(days=1)
    assert report == {"color_prediction": {"bets": 2, "wagered": 200, "paid": 200, "rtp": 1.0}}
