import pytest
from sqlalchemy import func, select, update as sa_update
from sqlalchemy.exc import SQLAlchemyError

from casino_rounds.errors import (
    DuplicateRequestError, InsufficientBalanceError, InvalidAmountError, InvalidSelectionError,
    InvalidTransitionError, MatchNotFoundError, StaleStateError, ValidationError,
)
from casino_rounds.games import DiceGenerator
from casino_rounds.ludo import BASE, HOME, Move, apply_move, bot_move, has_won, legal_moves, new_board, square
from casino_rounds.models import LudoMatch, MatchStatus, WalletLedgerEntry

dice = DiceGenerator()


def seed_where(predicate):
    """First seed whose opening two rolls satisfy ``predicate``."""
    for i in range(5000):
        seed = f"ludo-{i}"
        if predicate(dice.roll(seed, 0), dice.roll(seed, 1)):
            return seed
    raise AssertionError("no seed found")


def set_board(engine, match_id, board):
    with engine.sessions() as session:
        session.execute(sa_update(LudoMatch).where(LudoMatch.id == match_id).values(board=board))
        session.commit()


@pytest.fixture
def player(engine, fund):
    fund(engine, "alice", 1000)
    return "alice"


# ---------------------------------------------------------------------
# board rules
# ---------------------------------------------------------------------

def test_leaving_base_needs_a_six():
    board = new_board(["P1", "P2"])
    assert legal_moves(board, "P1", 5) == []
    moves = legal_moves(board, "P1", 6)
    assert [(m.token, m.from_progress, m.to_progress) for m in moves] == [(i, BASE, 0) for i in range(4)]

def test_home_needs_an_exact_roll():
    board = {"P1": [54, BASE, BASE, BASE], "P2": [BASE] * 4}
    assert legal_moves(board, "P1", 2) == [Move(0, 54, HOME, False, True)]
    assert legal_moves(board, "P1", 3) == []

def test_capture_sends_opponent_to_base():
    # P1 progress 5 and P2 progress 44 are both square 6
    assert square("P1", 5) == square("P2", 44) == 6
    board = {"P1": [3, BASE, BASE, BASE], "P2": [44, BASE, BASE, BASE]}
    move = legal_moves(board, "P1", 2)[0]
    assert move.captures
    after, captured = apply_move(board, "P1", move)
    assert captured == [("P2", 0)]
    assert after == {"P1": [5, BASE, BASE, BASE], "P2": [BASE] * 4}
    assert board["P2"] == [44, BASE, BASE, BASE]

def test_no_capture_on_safe_squares_or_in_home_column():
    board = {"P1": [6, BASE, BASE, BASE], "P2": [47, BASE, BASE, BASE]}
    assert square("P1", 8) == square("P2", 47) == 9
    assert not legal_moves(board, "P1", 2)[0].captures
    assert square("P2", 51) is None and square("P2", BASE) is None

def test_bot_prefers_finish_then_capture_then_distance():
    finish = Move(0, 53, HOME, False, True)
    capture = Move(1, 10, 13, True, False)
    long_step = Move(2, 20, 26, False, False)
    short_step = Move(3, 30, 31, False, False)
    assert bot_move([short_step, capture, finish, long_step]) == finish
    assert bot_move([short_step, capture, long_step]) == capture
    assert bot_move([short_step, long_step]) == long_step
    assert bot_move([Move(3, 1, 4, False, False), Move(1, 5, 8, False, False)]).token == 1

def test_has_won():
    assert has_won({"P1": [HOME] * 4}, "P1")
    assert not has_won({"P1": [HOME, HOME, HOME, 50]}, "P1")


# ---------------------------------------------------------------------
# matches
# ---------------------------------------------------------------------

def test_start_match_debits_fee_once(engine, player):
    match = engine.start_ludo_match(player, 100, "2p", "m-1")
    again = engine.start_ludo_match(player, 100, "2p", "m-1")
    assert again.id == match.id
    assert match.status == MatchStatus.IN_PROGRESS
    assert match.board == {"P1": [BASE] * 4, "P2": [BASE] * 4}
    assert engine.balance(player) == 900
    with pytest.raises(DuplicateRequestError):
        engine.start_ludo_match(player, 200, "2p", "m-1")

def test_start_match_validation(engine, player, key):
    with pytest.raises(ValidationError):
        engine.start_ludo_match(player, 100, "3p", key())
    with pytest.raises(InvalidAmountError):
        engine.start_ludo_match(player, 5, "2p", key())
    with pytest.raises(ValidationError):
        engine.start_ludo_match(player, 100, "2p", "")
    with pytest.raises(InsufficientBalanceError):
        engine.start_ludo_match(player, 5000, "2p", key())
    assert engine.balance(player) == 1000

def test_four_player_match_seats_bots(engine, player, key):
    match = engine.start_ludo_match(player, 100, "4p", key())
    assert sorted(match.board) == ["P1", "P2", "P3", "P4"]

def test_match_hides_seed_while_in_progress(engine, player, key):
    match = engine.start_ludo_match(player, 100, "2p", key(), seed="dice-secret")
    shown = engine.get_ludo_match(match.id, player)
    assert "seed" not in shown.__dict__
    with pytest.raises(SQLAlchemyError):
        shown.seed
    assert engine.verify_match(match.id)["status"] == "seed_not_revealed_yet"
    with pytest.raises(MatchNotFoundError):
        engine.get_ludo_match(match.id, "mallory")

def test_roll_without_a_move_hands_over_to_bots(engine, player, key):
    seed = seed_where(lambda first, second: first != 6)
    match = engine.start_ludo_match(player, 100, "2p", key(), seed=seed)
    result = engine.roll_dice(match.id, player, "roll-1")
    assert result["dice"] == dice.roll(seed, 0)
    assert result["legal_moves"] == []
    assert result["bot_turns"] and all(t["seat"] == "P2" for t in result["bot_turns"])
    assert result["current_player"] == "P1" and result["phase"] == "rolling"

    stored = engine.get_ludo_match(match.id)
    assert len(stored.dice_history) == 1 + len(result["bot_turns"])
    assert stored.dice_history == [dice.roll(seed, i) for i in range(len(stored.dice_history))]

    assert engine.roll_dice(match.id, player, "roll-1") == result
    assert engine.get_ludo_match(match.id).dice_history == stored.dice_history

def test_six_then_move_gives_another_roll(engine, player, key):
    seed = seed_where(lambda first, second: first == 6)
    match = engine.start_ludo_match(player, 100, "2p", key(), seed=seed)
    rolled = engine.roll_dice(match.id, player, key())
    assert rolled["phase"] == "moving" and len(rolled["legal_moves"]) == 4
    with pytest.raises(InvalidTransitionError):
        engine.roll_dice(match.id, player, key())

    with pytest.raises(StaleStateError):
        engine.make_move(match.id, player, 0, "not-the-hash", key())
    with pytest.raises(InvalidSelectionError):
        engine.make_move(match.id, player, 7, rolled["state_hash"], key())

    moved = engine.make_move(match.id, player, 2, rolled["state_hash"], key())
    assert moved["move"]["to_progress"] == 0
    assert moved["bot_turns"] == []
    assert moved["current_player"] == "P1" and moved["phase"] == "rolling"
    assert engine.get_ludo_match(match.id).board["P1"] == [BASE, BASE, 0, BASE]

def test_winning_move_pays_entry_fee_twice_over(engine, player, key):
    seen = []
    engine.events.subscribe(lambda kind, payload: seen.append(payload), kinds=["match_completed"])
    seed = seed_where(lambda first, second: first == 6)
    match = engine.start_ludo_match(player, 100, "2p", key(), seed=seed)
    set_board(engine, match.id, {"P1": [HOME, HOME, HOME, 50], "P2": [BASE] * 4})

    rolled = engine.roll_dice(match.id, player, key())
    assert [m["token"] for m in rolled["legal_moves"]] == [3]
    won = engine.make_move(match.id, player, 3, rolled["state_hash"], "win-move")
    assert won["status"] == MatchStatus.WON and won["winner"] == "P1" and won["payout"] == 200
    assert engine.balance(player) == 1100
    assert engine.make_move(match.id, player, 3, rolled["state_hash"], "win-move") == won
    assert engine.balance(player) == 1100
    assert [(p["status"], p["payout"]) for p in seen] == [(MatchStatus.WON, 200)]

    verified = engine.verify_match(match.id)
    assert verified["status"] == "verifiable" and verified["seed"] == seed
    assert verified["hash_matches"] and verified["dice_match"]
    with pytest.raises(InvalidTransitionError):
        engine.roll_dice(match.id, player, key())

def test_bot_win_settles_match_as_lost(engine, player, key):
    seed = seed_where(lambda first, second: first != 6)
    match = engine.start_ludo_match(player, 100, "2p", key(), seed=seed)
    set_board(engine, match.id, {"P1": [BASE] * 4, "P2": [HOME, HOME, HOME, HOME - dice.roll(seed, 1)]})

    result = engine.roll_dice(match.id, player, key())
    assert len(result["bot_turns"]) == 1 and result["bot_turns"][0]["move"]["finishes"]
    assert result["status"] == MatchStatus.LOST and result["winner"] == "P2" and result["payout"] == 0
    assert engine.balance(player) == 900
    with engine.sessions() as session:
        wins = session.execute(
            select(func.count(WalletLedgerEntry.id)).where(WalletLedgerEntry.reason_code == "ludo_win")
        ).scalar_one()
    assert wins == 0

def test_match_plays_to_completion(engine, player, key):
    match = engine.start_ludo_match(player, 100, "2p", key(), seed="full-game")
    result = {"phase": "rolling", "status": MatchStatus.IN_PROGRESS}
    for _ in range(5000):
        if result["status"] != MatchStatus.IN_PROGRESS:
            break
        if result["phase"] == "moving":
            token = result["legal_moves"][0]["token"]
            result = engine.make_move(match.id, player, token, result["state_hash"], key())
        else:
            result = engine.roll_dice(match.id, player, key())
    assert result["status"] in (MatchStatus.WON, MatchStatus.LOST)

    final = engine.get_ludo_match(match.id)
    assert final.status == result["status"]
    assert has_won(final.board, final.winner)
    expected = 1100 if final.status == MatchStatus.WON else 900
    assert engine.balance(player) == expected
    assert engine.verify_match(match.id)["dice_match"]

def test_same_roll_key_from_many_threads(engine, player, key, run_together):
    seed = seed_where(lambda first, second: first != 6)
    match = engine.start_ludo_match(player, 100, "2p", key(), seed=seed)
    results = run_together(*[lambda: engine.roll_dice(match.id, player, "roll-once") for _ in range(4)])
    assert not [r for r in results if isinstance(r, Exception)]
    assert all(r == results[0] for r in results)
    assert len(engine.get_ludo_match(match.id).dice_history) == 1 + len(results[0]["bot_turns"])
