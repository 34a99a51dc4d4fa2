from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from undercover import (
    ROLE_LABELS,
    WINNER_LABELS,
    Action,
    GameMode,
    GameSession,
    JudgeResult,
    Phase,
    Player,
    Role,
    judge,
)
from words import LLMWordPairProvider, StaticWordPairProvider, WordPair

ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*").split(",")
LOG_LEVEL = os.getenv("UNDERCOVER_LOG_LEVEL", "INFO").upper()
AI_WORDS = os.getenv("UNDERCOVER_AI_WORDS", "1").lower() not in ("0", "false", "no")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


def _make_llm_provider() -> Optional[LLMWordPairProvider]:
    if not AI_WORDS or not os.getenv("DEEPSEEK_API_KEY"):
        return None
    return LLMWordPairProvider()


STATIC_WORDS = StaticWordPairProvider()
LLM_WORDS = _make_llm_provider()


class RoomNotFound(Exception):
    code = "RoomNotFound"


class WSClientType(str, Enum):
    TV = "tv"
    PLAYER = "player"


@dataclass(eq=False)
class WSClient:
    websocket: WebSocket
    client_type: WSClientType
    player_id: Optional[str] = None


class Room:
    def __init__(self, room_id: str, mode: GameMode = GameMode.TEXT, undercover_count: int = 1, mr_white_count: int = 0) -> None:
        self.session = GameSession(
            room_id=room_id,
            mode=mode,
            undercover_count=undercover_count,
            mr_white_count=mr_white_count,
        )
        self.messages: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()
        self._clients: Set[WSClient] = set()

    @property
    def room_id(self) -> str:
        return self.session.room_id

    def _log(self, sender: str, content: str, is_system: bool) -> Dict[str, Any]:
        entry = {
            "ts": time.strftime("%H:%M:%S"),
            "sender": sender,
            "content": content,
            "is_system": is_system,
        }
        self.messages.append(entry)
        self.messages = self.messages[-200:]
        return entry

    def _player_entry(self, p: Player) -> Dict[str, Any]:
        s = self.session
        entry = {
            "id": p.id,
            "name": p.username,
            "alive": p.is_alive,
            "has_spoken": p.has_spoken,
            "is_host": s.host is p,
            "voted": p.id in s.pending_votes,
        }
        if not p.is_alive or s.phase == Phase.RESULT:
            entry["role"] = p.role.value
            entry["role_label"] = ROLE_LABELS[p.role]
        return entry

    def _public_snapshot(self) -> Dict[str, Any]:
        s = self.session
        speaker = s.current_speaker if s.phase in (Phase.SPEAKING, Phase.SPEAKING_PK) else None
        snap = {
            "room_id": s.room_id,
            "mode": s.mode,
            "phase": s.phase,
            "round_count": s.round_count,
            "current_speaker": {"id": speaker.id, "name": speaker.username} if speaker else None,
            "players": [self._player_entry(p) for p in s.players],
            "tied_players": list(s.tied_players),
            "votes": {"received": len(s.pending_votes), "total": len(s.alive_players())},
            "winners": s.winners,
            "undercover_count": s.undercover_count,
            "mr_white_count": s.mr_white_count,
            "timers": {
                "discussion_ends_at": s.discussion_ends_at,
                "voting_ends_at": s.voting_ends_at,
                "discussion_seconds": s.discussion_seconds,
                "voting_seconds": s.voting_seconds,
            },
        }
        if s.phase == Phase.RESULT:
            snap["words"] = {"civilian": s.civilian_word, "undercover": s.undercover_word}
        return snap

    def _private_view(self, player_id: str) -> Dict[str, Any]:
        p = self.session.get_player(player_id)
        if not p:
            return {}
        # Civilians and undercover players only learn their word; Mr. White knows there is none.
        knows_role = p.role == Role.MR_WHITE or not p.is_alive or self.session.phase == Phase.RESULT
        return {
            "id": p.id,
            "name": p.username,
            "alive": p.is_alive,
            "keyword": p.keyword,
            "role": p.role.value if knows_role and self.session.phase != Phase.WAITING else None,
            "my_vote": self.session.pending_votes.get(p.id),
        }

    def _private_snapshot(self, player_id: str) -> Dict[str, Any]:
        p = self.session.get_player(player_id)
        if not p:
            return {}
        base = self._public_snapshot()
        base["me"] = self._private_view(player_id)
        return base

    async def _send(self, ws: WebSocket, msg: Dict[str, Any]) -> None:
        await ws.send_text(json.dumps(msg, ensure_ascii=False))

    async def _fan_out(self, msg: Dict[str, Any], player_id: Optional[str] = None) -> None:
        """Send to every client, or only to ``player_id``'s sockets; drop sockets that fail."""
        dropped = []
        for c in list(self._clients):
            if player_id is not None and c.player_id != player_id:
                continue
            try:
                await self._send(c.websocket, msg)
            except Exception as e:
                logger.debug("room %s: dropping websocket (%s)", self.room_id, e)
                dropped.append(c)
        self._clients.difference_update(dropped)

    async def _sync_all(self) -> None:
        await self._fan_out({"type": "PUBLIC_STATE", "data": self._public_snapshot()})
        for pid in {c.player_id for c in self._clients if c.player_id}:
            await self._fan_out({"type": "PRIVATE_STATE", "data": self._private_snapshot(pid)}, player_id=pid)

    async def _narrate(self, line: str) -> None:
        entry = self._log("system", line, is_system=True)
        await self._fan_out({"type": "SYSTEM_MESSAGE", "message": entry})

    async def _chat(self, sender: str, line: str) -> None:
        entry = self._log(sender, line, is_system=False)
        await self._fan_out({"type": "CHAT_MESSAGE", "message": entry})

    async def join(self, name: str) -> str:
        async with self._lock:
            if self.session.phase not in (Phase.WAITING, Phase.RESULT):
                raise ValueError("The game has already started.")
            name = name.strip()[:24] or "Player"
            if any(p.username == name for p in self.session.players):
                raise ValueError(f"The name {name} is already taken in this room.")
            pid = uuid.uuid4().hex[:8]
            self.session.players.append(Player(id=pid, username=name))
        logger.info("room %s: %s joined as %s", self.room_id, name, pid)
        await self._narrate(f"{name} joined the room.")
        await self._sync_all()
        return pid

    async def configure(self, cfg: Dict[str, Any]) -> None:
        async with self._lock:
            s = self.session
            if s.phase not in (Phase.WAITING, Phase.RESULT):
                return
            if "mode" in cfg:
                s.mode = GameMode(cfg["mode"])
            if "undercoverCount" in cfg:
                s.undercover_count = max(1, min(10, int(cfg["undercoverCount"])))
            if "mrWhiteCount" in cfg:
                s.mr_white_count = max(0, min(10, int(cfg["mrWhiteCount"])))
            if "discussionTime" in cfg:
                s.discussion_seconds = max(10, min(300, int(cfg["discussionTime"])))
            if "voteTime" in cfg:
                s.voting_seconds = max(10, min(120, int(cfg["voteTime"])))
        await self._sync_all()

    async def _word_pair(self) -> WordPair:
        if self.session.mode == GameMode.PARTY and LLM_WORDS is not None:
            return await LLM_WORDS.get_pair()
        return await STATIC_WORDS.get_pair()

    async def act(
        self,
        action: str,
        player_id: Optional[str] = None,
        latest_message: Optional[str] = None,
        single_vote: Optional[Dict[str, str]] = None,
        votes: Optional[Dict[str, str]] = None,
        timeout: bool = False,
        round_number: Optional[int] = None,
    ) -> JudgeResult:
        word_pair = None
        if action == Action.START_GAME.value and self.session.phase in (Phase.WAITING, Phase.RESULT):
            # Fetched outside the lock; the model can take a few seconds.
            word_pair = await self._word_pair()

        async with self._lock:
            was_over = self.session.phase == Phase.RESULT
            if player_id:
                sender = self.session.get_player(player_id)
            elif action == Action.PLAYER_SPEAK.value and self.session.phase in (Phase.SPEAKING, Phase.SPEAKING_PK):
                sender = self.session.current_speaker
            else:
                sender = None
            result = judge(
                self.session,
                action,
                latest_message=latest_message,
                single_vote=single_vote,
                votes=votes,
                word_pair=word_pair,
                requested_by=player_id,
                timeout=timeout,
                round_number=round_number,
            )
            if result.ok:
                self.session = result.session

        if not result.ok:
            return result

        if latest_message and sender:
            await self._chat(sender.username, latest_message)
        if result.system_message:
            await self._narrate(result.system_message)
        if self.session.phase == Phase.VOTING and self.session.pending_votes:
            await self._fan_out({
                "type": "VOTE_STATUS",
                "received": len(self.session.pending_votes),
                "total": len(self.session.alive_players()),
            })
        if self.session.phase == Phase.RESULT and not was_over:
            winners = self.session.winners
            await self._fan_out({"type": "GAME_OVER", "winners": winners, "winners_label": WINNER_LABELS.get(winners)})
        await self._sync_all()
        return result


class RoomStore:
    def __init__(self) -> None:
        self._rooms: Dict[str, Room] = {}

    def __len__(self) -> int:
        return len(self._rooms)

    def create(self, mode: GameMode = GameMode.TEXT, undercover_count: int = 1, mr_white_count: int = 0) -> Room:
        room_id = uuid.uuid4().hex[:6].upper()
        while room_id in self._rooms:
            room_id = uuid.uuid4().hex[:6].upper()
        room = Room(room_id, mode=mode, undercover_count=undercover_count, mr_white_count=mr_white_count)
        self._rooms[room_id] = room
        logger.info("room %s created (%s mode)", room_id, mode.value)
        return room

    def get(self, room_id: str) -> Room:
        room = self._rooms.get(room_id.upper())
        if room is None:
            raise RoomNotFound(f"Room {room_id} does not exist.")
        return room

    def clear(self) -> None:
        self._rooms.clear()


def _error(code: str, detail: str) -> Dict[str, Any]:
    return {"ok": False, "error": code, "detail": detail}


app = FastAPI(title="Undercover")
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ROOMS = RoomStore()


@app.get("/")
async def root():
    return {"ok": True, "hint": "Create a room with POST /api/rooms, then connect to /ws/{room_id}."}


@app.get("/api/health")
async def health():
    return {"ok": True, "rooms": len(ROOMS)}


@app.post("/api/rooms")
async def api_create_room(payload: Dict[str, Any]):
    try:
        mode = GameMode(payload.get("mode") or GameMode.TEXT)
        undercover_count = max(1, int(payload.get("undercover_count", 1)))
        mr_white_count = max(0, int(payload.get("mr_white_count", 0)))
    except (TypeError, ValueError) as e:
        return _error("InvalidRequest", str(e))
    room = ROOMS.create(mode, undercover_count, mr_white_count)
    return {"ok": True, "room_id": room.room_id}


@app.get("/api/rooms/{room_id}")
async def api_room_state(room_id: str, player_id: Optional[str] = None):
    try:
        room = ROOMS.get(room_id)
    except RoomNotFound as e:
        return _error(e.code, str(e))
    data = {"ok": True, "session": room._public_snapshot()}
    if player_id:
        data["me"] = room._private_view(player_id)
    return data


@app.get("/api/rooms/{room_id}/messages")
async def api_room_messages(room_id: str):
    try:
        room = ROOMS.get(room_id)
    except RoomNotFound as e:
        return _error(e.code, str(e))
    return {"ok": True, "messages": list(room.messages)}


@app.post("/api/rooms/{room_id}/join")
async def api_join(room_id: str, payload: Dict[str, Any]):
    try:
        room = ROOMS.get(room_id)
        pid = await room.join(payload.get("name") or "")
    except RoomNotFound as e:
        return _error(e.code, str(e))
    except ValueError as e:
        return _error("InvalidRequest", str(e))
    return {"ok": True, "player_id": pid}


@app.post("/api/rooms/{room_id}/config")
async def api_config(room_id: str, payload: Dict[str, Any]):
    try:
        room = ROOMS.get(room_id)
        await room.configure(payload)
    except RoomNotFound as e:
        return _error(e.code, str(e))
    except (TypeError, ValueError) as e:
        return _error("InvalidRequest", str(e))
    return {"ok": True, "session": room._public_snapshot()}


@app.post("/api/rooms/{room_id}/judge")
async def api_judge(room_id: str, payload: Dict[str, Any]):
    action = payload.get("action")
    if not action:
        return _error("InvalidAction", "Missing action")
    try:
        room = ROOMS.get(room_id)
    except RoomNotFound as e:
        return _error(e.code, str(e))

    player_id = payload.get("player_id")
    single_vote = payload.get("singleVote")
    if isinstance(single_vote, dict) and player_id and not single_vote.get("voter"):
        single_vote = {**single_vote, "voter": player_id}
    votes = payload.get("votes")
    if votes is not None and not isinstance(votes, dict):
        return _error("InvalidRequest", "votes must be an object")
    round_number = payload.get("round")
    try:
        round_number = int(round_number) if round_number is not None else None
    except (TypeError, ValueError):
        return _error("InvalidRequest", "round must be an integer")

    result = await room.act(
        action,
        player_id=player_id,
        latest_message=payload.get("latestMessage"),
        single_vote=single_vote if isinstance(single_vote, dict) else None,
        votes=votes,
        timeout=bool(payload.get("timeout")),
        round_number=round_number,
    )
    if not result.ok:
        return _error(result.error, result.detail or "")

    data = {
        "ok": True,
        "systemMessage": result.system_message,
        "updatedSession": room._public_snapshot(),
    }
    if player_id:
        data["me"] = room._private_view(player_id)
    return data


@app.websocket("/ws/{room_id}")
async def websocket_endpoint(ws: WebSocket, room_id: str):
    await ws.accept()
    try:
        room = ROOMS.get(room_id)
    except RoomNotFound:
        await ws.close(code=4404)
        return

    try:
        ctype = WSClientType(ws.query_params.get("client", "player"))
    except ValueError:
        await ws.close(code=4400)
        return

    player_id = ws.query_params.get("player_id") if ctype == WSClientType.PLAYER else None
    me = room.session.get_player(player_id) if player_id else None
    if player_id and me is None:
        # Ids are only handed out by /join; anything else is a stale tab.
        await ws.close(code=4403)
        return

    client = WSClient(websocket=ws, client_type=ctype, player_id=player_id)
    room._clients.add(client)
    logger.debug("room %s: %s connected (%d clients)", room.room_id, player_id or ctype.value, len(room._clients))

    await room._send(ws, {
        "type": "HELLO",
        "room_id": room.room_id,
        "client": ctype.value,
        "player_id": player_id,
        "name": me.username if me else None,
        "is_host": me is not None and room.session.host is me,
        "mode": room.session.mode,
        "phase": room.session.phase,
    })
    await room._send(ws, {"type": "PUBLIC_STATE", "data": room._public_snapshot()})
    if me is not None:
        await room._send(ws, {"type": "PRIVATE_STATE", "data": room._private_snapshot(player_id)})

    try:
        while True:
            try:
                data = json.loads(await ws.receive_text())
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict) and data.get("type") == "PING":
                await room._send(ws, {"type": "PONG"})
    except WebSocketDisconnect:
        logger.debug("room %s: websocket closed (%s)", room.room_id, player_id or ctype.value)
    finally:
        room._clients.discard(client)
