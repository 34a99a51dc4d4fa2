"""Shared fixtures and utilities for Undercover tests."""
from __future__ import annotations

import random
import sys
from pathlib import Path
from typing import Dict, List

import pytest
from httpx import AsyncClient, ASGITransport

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from server import ROOMS, app
from undercover import GameMode, GameSession, JudgeResult, Phase, Player, Role, judge
from words import WordPair

PAIR = WordPair("Coke", "Sprite")


def make_session(
    count: int,
    mode: GameMode = GameMode.TEXT,
    undercover_count: int = 1,
    mr_white_count: int = 0,
) -> GameSession:
    """Build a waiting-room session with players p0..p{count-1}."""
    players = [Player(id=f"p{i}", username=f"Player{i}") for i in range(count)]
    return GameSession(
        room_id="ROOM1",
        mode=mode,
        players=players,
        undercover_count=undercover_count,
        mr_white_count=mr_white_count,
    )


def start(session: GameSession, seed: int = 7, pair: WordPair = PAIR) -> GameSession:
    """Run start_game and return the started session."""
    result = judge(session, "start_game", word_pair=pair, rng=random.Random(seed), now=1000.0)
    assert result.ok, result.detail
    return result.session


def rig(session: GameSession, roles: List[Role]) -> GameSession:
    """Force a role layout (roster order) onto a started session."""
    for p, role in zip(session.players, roles):
        p.role = role
        p.keyword = "" if role == Role.MR_WHITE else (PAIR.word_b if role == Role.UNDERCOVER else PAIR.word_a)
    session.undercover_count = roles.count(Role.UNDERCOVER)
    session.mr_white_count = roles.count(Role.MR_WHITE)
    return session


def started_game(roles: List[Role], mode: GameMode = GameMode.TEXT, phase: Phase = Phase.SPEAKING) -> GameSession:
    """Started session with the given roles, first speaker p0, in ``phase``."""
    session = rig(start(make_session(len(roles), mode=mode)), roles)
    session.current_speaker_index = 0
    session.phase = phase
    return session


def count_roles(session: GameSession) -> Dict[Role, int]:
    counts: Dict[Role, int] = {}
    for p in session.players:
        counts[p.role] = counts.get(p.role, 0) + 1
    return counts


def get_players_by_role(session: GameSession, role: Role) -> List[Player]:
    return [p for p in session.players if p.role == role]


def kill_player(session: GameSession, player_id: str) -> None:
    """Kill a player directly (for setting up scenarios)."""
    p = session.get_player(player_id)
    if p:
        p.is_alive = False


def vote(session: GameSession, votes: Dict[str, str], seed: int = 3) -> JudgeResult:
    return judge(session, "player_vote", votes=votes, rng=random.Random(seed), now=2000.0)


def speak_until_done(session: GameSession) -> tuple[GameSession, List[str]]:
    """Call player_speak until the speaking phase ends; return speakers in order."""
    phase = session.phase
    order: List[str] = []
    for _ in range(len(session.players) + 1):
        if session.phase != phase:
            break
        order.append(session.current_speaker.id)
        result = judge(session, "player_speak", now=3000.0)
        assert result.ok, result.detail
        session = result.session
    return session, order


@pytest.fixture
def session() -> GameSession:
    """Fresh five-player waiting session for each test."""
    return make_session(5)


@pytest.fixture
async def client():
    """Async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(autouse=True)
def reset_rooms():
    """Drop every room before and after each test."""
    ROOMS.clear()
    yield
    ROOMS.clear()
