from __future__ import annotations

import copy
import logging
import random
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from words import WordPair, random_pair

logger = logging.getLogger(__name__)


class Role(str, Enum):
    CIVILIAN = "civilian"
    UNDERCOVER = "undercover"
    MR_WHITE = "mr_white"


ROLE_LABELS = {
    Role.CIVILIAN: "Civilian",
    Role.UNDERCOVER: "Undercover",
    Role.MR_WHITE: "Mr. White",
}


class Phase(str, Enum):
    WAITING = "waiting"
    SPEAKING = "speaking"
    SPEAKING_PK = "speaking_pk"
    DISCUSSION = "discussion"
    VOTING = "voting"
    RESULT = "result"


class GameMode(str, Enum):
    TEXT = "text"
    PARTY = "party"


class Winners(str, Enum):
    NONE = "none"
    CIVILIANS = "civilians"
    UNDERCOVERS = "undercovers"


WINNER_LABELS = {
    Winners.CIVILIANS: "the Civilians",
    Winners.UNDERCOVERS: "the Undercover side",
}


class Action(str, Enum):
    START_GAME = "start_game"
    PLAYER_SPEAK = "player_speak"
    END_DISCUSSION = "end_discussion"
    SUBMIT_VOTE = "submit_vote"
    PLAYER_VOTE = "player_vote"


SKIP = "skip"
MIN_PLAYERS = 3
DISCUSSION_SECONDS = 40
VOTING_SECONDS = 30

VALID_ACTIONS = {
    Phase.WAITING: {Action.START_GAME},
    Phase.SPEAKING: {Action.PLAYER_SPEAK},
    Phase.SPEAKING_PK: {Action.PLAYER_SPEAK},
    Phase.DISCUSSION: {Action.END_DISCUSSION},
    Phase.VOTING: {Action.SUBMIT_VOTE, Action.PLAYER_VOTE},
    Phase.RESULT: {Action.START_GAME},
}

# Phase a deadline-expiry action was scheduled for.
TIMEOUT_PHASES = {
    Action.END_DISCUSSION: Phase.DISCUSSION,
    Action.SUBMIT_VOTE: Phase.VOTING,
}

# Seconds a client clock may run ahead of the deadline it reports.
TIMEOUT_GRACE = 1.0


class GameError(Exception):
    code = "GameError"


class InsufficientPlayers(GameError):
    code = "InsufficientPlayers"


class NoVoteProvided(GameError):
    code = "NoVoteProvided"


class InvalidAction(GameError):
    code = "InvalidAction"


@dataclass
class Player:
    id: str
    username: str
    role: Role = Role.CIVILIAN
    keyword: str = ""
    is_alive: bool = True
    has_spoken: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Player:
        return cls(
            id=str(data["id"]),
            username=str(data.get("username") or data["id"]),
            role=Role(data.get("role") or Role.CIVILIAN),
            keyword=data.get("keyword") or "",
            is_alive=bool(data.get("is_alive", True)),
            has_spoken=bool(data.get("has_spoken", False)),
        )


@dataclass
class GameSession:
    room_id: str
    mode: GameMode = GameMode.TEXT
    phase: Phase = Phase.WAITING
    players: List[Player] = field(default_factory=list)
    current_speaker_index: int = 0
    round_count: int = 1
    civilian_word: str = ""
    undercover_word: str = ""
    undercover_count: int = 1
    mr_white_count: int = 0
    tied_players: List[str] = field(default_factory=list)
    pending_votes: Dict[str, str] = field(default_factory=dict)
    winners: Winners = Winners.NONE
    discussion_ends_at: Optional[float] = None
    voting_ends_at: Optional[float] = None
    discussion_seconds: int = DISCUSSION_SECONDS
    voting_seconds: int = VOTING_SECONDS

    @property
    def host(self) -> Optional[Player]:
        return self.players[0] if self.players else None

    @property
    def current_speaker(self) -> Optional[Player]:
        if 0 <= self.current_speaker_index < len(self.players):
            return self.players[self.current_speaker_index]
        return None

    def get_player(self, player_id: str) -> Optional[Player]:
        for p in self.players:
            if p.id == player_id:
                return p
        return None

    def alive_players(self) -> List[Player]:
        return [p for p in self.players if p.is_alive]

    def alive_by_role(self, role: Role) -> List[Player]:
        return [p for p in self.players if p.is_alive and p.role == role]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GameSession:
        return cls(
            room_id=str(data["room_id"]),
            mode=GameMode(data.get("mode") or GameMode.TEXT),
            phase=Phase(data.get("phase") or Phase.WAITING),
            players=[Player.from_dict(p) for p in data.get("players") or []],
            current_speaker_index=int(data.get("current_speaker_index", 0)),
            round_count=int(data.get("round_count", 1)),
            civilian_word=data.get("civilian_word") or "",
            undercover_word=data.get("undercover_word") or "",
            undercover_count=int(data.get("undercover_count", 1)),
            mr_white_count=int(data.get("mr_white_count", 0)),
            tied_players=list(data.get("tied_players") or []),
            pending_votes=dict(data.get("pending_votes") or {}),
            winners=Winners(data.get("winners") or Winners.NONE),
            discussion_ends_at=data.get("discussion_ends_at"),
            voting_ends_at=data.get("voting_ends_at"),
            discussion_seconds=int(data.get("discussion_seconds", DISCUSSION_SECONDS)),
            voting_seconds=int(data.get("voting_seconds", VOTING_SECONDS)),
        )


@dataclass
class JudgeResult:
    session: GameSession
    system_message: Optional[str] = None
    error: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_response(self) -> Dict[str, Any]:
        if self.error:
            return {"error": self.error, "detail": self.detail}
        resp: Dict[str, Any] = {"updatedSession": self.session.to_dict()}
        if self.system_message is not None:
            resp["systemMessage"] = self.system_message
        return resp


def judge(
    session: GameSession,
    action: str,
    *,
    latest_message: Optional[str] = None,
    single_vote: Optional[Dict[str, str]] = None,
    votes: Optional[Dict[str, str]] = None,
    word_pair: Optional[WordPair] = None,
    requested_by: Optional[str] = None,
    timeout: bool = False,
    round_number: Optional[int] = None,
    rng: Optional[random.Random] = None,
    now: Optional[float] = None,
) -> JudgeResult:
    """
    Apply one action to a session and return the new session.

    The input session is never mutated. Engine errors come back as a tagged
    result instead of being raised; ``latest_message`` is not interpreted.
    """
    rng = rng or random.Random()
    now = time.time() if now is None else now
    try:
        act = Action(action)
    except ValueError:
        return JudgeResult(session=session, error=InvalidAction.code, detail=f"Unknown action: {action}")

    if timeout and _is_stale_timeout(session, act, round_number, now):
        logger.debug("room %s: ignoring stale %s timeout", session.room_id, act.value)
        return JudgeResult(session=session)

    state = copy.deepcopy(session)
    try:
        _check_phase(state, act)
        if act == Action.START_GAME:
            msg = _start_game(state, word_pair, requested_by, rng)
        elif act == Action.PLAYER_SPEAK:
            msg = _player_speak(state, now)
        elif act == Action.END_DISCUSSION:
            msg = _end_discussion(state, now)
        elif act == Action.SUBMIT_VOTE:
            msg = _submit_vote(state, single_vote, timeout, rng)
        else:
            state.pending_votes = {}
            msg = _resolve_votes(state, votes, rng)
    except GameError as e:
        logger.info("room %s: %s rejected (%s: %s)", session.room_id, act.value, e.code, e)
        return JudgeResult(session=session, error=e.code, detail=str(e))

    return JudgeResult(session=state, system_message=msg)


def _is_stale_timeout(session: GameSession, act: Action, round_number: Optional[int], now: float) -> bool:
    target = TIMEOUT_PHASES.get(act)
    if target is not None and session.phase != target:
        return True
    if round_number is not None and round_number != session.round_count:
        return True
    # A sudden-death re-vote reuses the phase and round, so only the deadline tells them apart.
    deadline = {
        Action.END_DISCUSSION: session.discussion_ends_at,
        Action.SUBMIT_VOTE: session.voting_ends_at,
    }.get(act)
    return deadline is not None and now < deadline - TIMEOUT_GRACE


def _check_phase(session: GameSession, act: Action) -> None:
    if act not in VALID_ACTIONS.get(session.phase, set()):
        raise InvalidAction(f"{act.value} is not allowed during {session.phase.value}")


def assign_roles(session: GameSession, pair: WordPair, rng: random.Random) -> None:
    """Deal roles and keywords in place."""
    players = session.players
    if session.mode == GameMode.PARTY:
        uc, mw = max(0, session.undercover_count), max(0, session.mr_white_count)
    else:
        uc, mw = 1, 0
    if uc + mw >= len(players) or uc + mw == 0:
        uc, mw = 1, 0
    session.undercover_count, session.mr_white_count = uc, mw

    pool = [Role.UNDERCOVER] * uc + [Role.MR_WHITE] * mw
    pool += [Role.CIVILIAN] * (len(players) - len(pool))
    rng.shuffle(pool)

    for p, role in zip(players, pool):
        p.role = role
        if role == Role.CIVILIAN:
            p.keyword = pair.word_a
        elif role == Role.UNDERCOVER:
            p.keyword = pair.word_b
        else:
            p.keyword = ""
        p.is_alive = True
        p.has_spoken = False


def _start_game(
    session: GameSession,
    pair: Optional[WordPair],
    requested_by: Optional[str],
    rng: random.Random,
) -> str:
    if len(session.players) < MIN_PLAYERS:
        raise InsufficientPlayers(f"At least {MIN_PLAYERS} players are needed.")
    if session.phase == Phase.RESULT and requested_by is not None and requested_by != session.host.id:
        raise InvalidAction("Only the room host can start a new game.")

    pair = pair or random_pair(rng)
    assign_roles(session, pair, rng)

    session.current_speaker_index = rng.randrange(len(session.players))
    session.phase = Phase.SPEAKING
    session.round_count = 1
    session.civilian_word = pair.word_a
    session.undercover_word = pair.word_b
    session.tied_players = []
    session.pending_votes = {}
    session.winners = Winners.NONE
    session.discussion_ends_at = None
    session.voting_ends_at = None

    first = session.current_speaker.username
    if session.mode == GameMode.PARTY:
        return (
            "The party is on! Everyone has a secret word (hold your card to peek). "
            f"The first speaker, picked at random, is {first}. Carry on around the room from there."
        )
    return f"The words are dealt and an undercover agent hides among you. {first}, you open round 1."


def _next_unspoken(session: GameSession, start: int) -> Optional[int]:
    n = len(session.players)
    for step in range(n):
        idx = (start + step) % n
        p = session.players[idx]
        if p.is_alive and not p.has_spoken:
            return idx
    return None


def _first_alive(session: GameSession) -> int:
    for idx, p in enumerate(session.players):
        if p.is_alive:
            return idx
    return 0


def _player_speak(session: GameSession, now: float) -> str:
    speaker = session.current_speaker
    if speaker is not None:
        speaker.has_spoken = True

    nxt = _next_unspoken(session, session.current_speaker_index + 1)
    if nxt is not None:
        session.current_speaker_index = nxt
        return f"Next up, {session.players[nxt].username}, your turn to speak."

    if session.phase == Phase.SPEAKING_PK:
        session.phase = Phase.VOTING
        session.voting_ends_at = now + session.voting_seconds
        return (
            f"The sudden-death speeches are done! Vote again within {session.voting_seconds} seconds "
            "to settle the duel."
        )

    session.phase = Phase.DISCUSSION
    if session.mode == GameMode.PARTY:
        session.discussion_ends_at = None
        return (
            "Every survivor has spoken. Argue it out freely; the host moves everyone "
            "to the vote when the room is ready."
        )
    session.discussion_ends_at = now + session.discussion_seconds
    return f"Everyone has spoken. {session.discussion_seconds} seconds of open discussion starts now!"


def _end_discussion(session: GameSession, now: float) -> str:
    session.phase = Phase.VOTING
    session.discussion_ends_at = None
    session.voting_ends_at = now + session.voting_seconds
    return f"Discussion is over, no more talking. Cast your votes within {session.voting_seconds} seconds."


def _submit_vote(
    session: GameSession,
    single_vote: Optional[Dict[str, str]],
    timeout: bool,
    rng: random.Random,
) -> Optional[str]:
    if not single_vote or not single_vote.get("target"):
        raise NoVoteProvided("No vote provided.")
    voter = single_vote.get("voter") or ""
    p = session.get_player(voter)
    if p is None or not p.is_alive:
        raise InvalidAction(f"{voter or 'Unknown player'} cannot vote.")

    if timeout and voter in session.pending_votes:
        return None
    session.pending_votes[voter] = single_vote["target"]

    alive = len(session.alive_players())
    if len(session.pending_votes) < alive:
        return None

    votes = session.pending_votes
    session.pending_votes = {}
    return _resolve_votes(session, votes, rng)


def tally(votes: Dict[str, str]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for target in votes.values():
        counts[target] = counts.get(target, 0) + 1
    return counts


def _name(session: GameSession, target: str) -> str:
    p = session.get_player(target)
    return p.username if p else target


def _new_round(session: GameSession) -> None:
    for p in session.players:
        p.has_spoken = False
    session.phase = Phase.SPEAKING
    session.round_count += 1
    session.tied_players = []
    session.voting_ends_at = None


def _resolve_votes(session: GameSession, votes: Optional[Dict[str, str]], rng: random.Random) -> str:
    if not votes:
        raise NoVoteProvided("No votes provided.")

    counts = tally(votes)
    top = max(counts.values())
    tied = [t for t, c in counts.items() if c == top]

    if len(tied) > 1:
        if SKIP in tied:
            _new_round(session)
            return f"The top vote tied with Skip, so nobody is out this round. Round {session.round_count} begins!"
        names = " and ".join(_name(session, t) for t in tied)
        if session.mode == GameMode.PARTY and any(
            p.is_alive for p in session.players if p.id in tied
        ):
            for p in session.players:
                p.has_spoken = p.id not in tied
            session.phase = Phase.SPEAKING_PK
            session.tied_players = tied
            session.voting_ends_at = None
            session.current_speaker_index = _next_unspoken(session, 0)
            return f"Sudden death! {names} are tied. Each of them gets one more speech to survive."
        _new_round(session)
        session.current_speaker_index = _first_alive(session)
        return f"Tie between {names}! To keep the pace, nobody is out this round."

    eliminated = tied[0]
    if eliminated == SKIP:
        _new_round(session)
        session.current_speaker_index = _first_alive(session)
        return "Skip got the most votes. Nobody is out this round!"

    victim = session.get_player(eliminated)
    if victim is None or not victim.is_alive:
        name = _name(session, eliminated)
        why = "is already out" if victim is not None else "is not in this game"
        _new_round(session)
        session.current_speaker_index = _first_alive(session)
        return f"Most votes went to {name}, who {why}. Nobody new is out this round!"

    role_label = ROLE_LABELS[victim.role]
    victim.is_alive = False
    name = victim.username

    winners = check_winner(session)
    if winners != Winners.NONE:
        session.phase = Phase.RESULT
        session.winners = winners
        session.tied_players = []
        session.voting_ends_at = None
        logger.info("room %s: game over, %s win", session.room_id, winners.value)
        if winners == Winners.CIVILIANS:
            return (
                f"{name} is voted out and was: {role_label}! "
                "Every undercover player is gone. The Civilians win! Game over."
            )
        return (
            f"{name} is voted out and was: {role_label}! "
            "The Undercover side now matches the Civilians. The Undercover side wins! Game over."
        )

    _new_round(session)
    alive = [idx for idx, p in enumerate(session.players) if p.is_alive]
    session.current_speaker_index = rng.choice(alive)
    return (
        f"{name} is out, and was really: {role_label}! The game goes on; "
        f"round {session.round_count} starts with {session.current_speaker.username}."
    )


def check_winner(session: GameSession) -> Winners:
    civilians = len(session.alive_by_role(Role.CIVILIAN))
    bad = len(session.alive_by_role(Role.UNDERCOVER)) + len(session.alive_by_role(Role.MR_WHITE))
    if bad == 0:
        return Winners.CIVILIANS
    if bad >= civilians:
        return Winners.UNDERCOVERS
    return Winners.NONE
