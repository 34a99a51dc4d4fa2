"""Tests for speaking rotation and phase transitions."""
from __future__ import annotations

import pytest
from undercover import GameMode, GameSession, Phase, Role, judge
from conftest import kill_player, make_session, speak_until_done, started_game, vote

C, U, W = Role.CIVILIAN, Role.UNDERCOVER, Role.MR_WHITE


class TestInitialState:
    """Test initial state values."""

    def test_initial_phase_is_waiting(self, session):
        """A new room waits for the host."""
        assert session.phase == Phase.WAITING

    def test_initial_round_count(self, session):
        """Round count starts at 1."""
        assert session.round_count == 1

    def test_host_is_first_player(self, session):
        """The first player in the roster hosts the room."""
        assert session.host.id == "p0"


class TestSpeakingRotation:
    """player_speak walks the roster in order."""

    def test_rotation_wraps_in_roster_order(self):
        """Starting mid-roster, every alive player speaks once, wrapping around."""
        session = started_game([C, C, U, C, C])
        session.current_speaker_index = 2

        session, order = speak_until_done(session)

        assert order == ["p2", "p3", "p4", "p0", "p1"]
        assert session.phase == Phase.DISCUSSION

    def test_dead_players_are_skipped(self):
        """An eliminated player is never selected as speaker."""
        session = started_game([C, C, U, C, C])
        kill_player(session, "p3")
        session.current_speaker_index = 2

        session, order = speak_until_done(session)

        assert order == ["p2", "p4", "p0", "p1"]
        assert "p3" not in order

    def test_next_speaker_is_announced(self):
        """Each hand-off names the next speaker."""
        session = started_game([C, U, C, C])

        result = judge(session, "player_speak")

        assert result.session.current_speaker_index == 1
        assert "Player1" in result.system_message
        assert result.session.players[0].has_spoken

    def test_latest_message_is_not_interpreted(self):
        """Speech content has no effect on the transition."""
        session = started_game([C, U, C, C])

        plain = judge(session, "player_speak", now=10.0)
        chatty = judge(session, "player_speak", latest_message="I think it is a drink", now=10.0)

        assert plain.session == chatty.session
        assert plain.system_message == chatty.system_message


class TestDiscussion:
    """Transitions out of the speaking round."""

    def test_text_mode_discussion_has_deadline(self):
        """Text mode gives 40 seconds of discussion."""
        session = started_game([C, U, C, C])
        session, _ = speak_until_done(session)

        assert session.phase == Phase.DISCUSSION
        assert session.discussion_ends_at == 3000.0 + 40

    def test_party_mode_discussion_is_open_ended(self):
        """Party mode leaves discussion to the host."""
        session = started_game([C, U, C, C], mode=GameMode.PARTY)
        session, _ = speak_until_done(session)

        assert session.phase == Phase.DISCUSSION
        assert session.discussion_ends_at is None

    def test_end_discussion_opens_vote(self):
        """end_discussion moves to voting with a 30 second deadline."""
        session = started_game([C, U, C, C], phase=Phase.DISCUSSION)

        result = judge(session, "end_discussion", now=500.0)

        assert result.session.phase == Phase.VOTING
        assert result.session.voting_ends_at == 530.0
        assert result.system_message

    def test_configured_timers_are_used(self):
        """Per-room timer settings replace the defaults."""
        session = started_game([C, U, C, C], phase=Phase.DISCUSSION)
        session.voting_seconds = 45

        result = judge(session, "end_discussion", now=100.0)

        assert result.session.voting_ends_at == 145.0


class TestInvalidActions:
    """Actions outside their phase are rejected."""

    @pytest.mark.parametrize(
        "phase, action",
        [
            (Phase.WAITING, "player_speak"),
            (Phase.SPEAKING, "end_discussion"),
            (Phase.SPEAKING, "player_vote"),
            (Phase.DISCUSSION, "submit_vote"),
            (Phase.DISCUSSION, "start_game"),
            (Phase.VOTING, "player_speak"),
            (Phase.RESULT, "submit_vote"),
        ],
    )
    def test_action_rejected_outside_phase(self, phase, action):
        session = started_game([C, U, C, C], phase=phase)

        result = judge(session, action, single_vote={"voter": "p0", "target": "p1"}, votes={"p0": "p1"})

        assert result.error == "InvalidAction"
        assert result.session is session

    def test_unknown_action(self, session):
        result = judge(session, "reveal_all")
        assert result.error == "InvalidAction"

    def test_only_host_restarts(self):
        """After a game ends, only players[0] may start the next one."""
        session = started_game([C, U, C, C], phase=Phase.RESULT)

        assert judge(session, "start_game", requested_by="p2").error == "InvalidAction"
        assert judge(session, "start_game", requested_by="p0").ok


class TestTimeoutActions:
    """Deadline-expiry actions are idempotent."""

    def test_late_discussion_timeout_is_ignored(self):
        """A discussion timeout arriving during the vote changes nothing."""
        session = started_game([C, U, C, C], phase=Phase.VOTING)

        result = judge(session, "end_discussion", timeout=True)

        assert result.ok
        assert result.system_message is None
        assert result.session is session

    def test_duplicate_discussion_timeouts(self):
        """Two clients firing the same timeout advance the phase once."""
        session = started_game([C, U, C, C], phase=Phase.DISCUSSION)

        first = judge(session, "end_discussion", timeout=True, now=10.0)
        second = judge(first.session, "end_discussion", timeout=True, now=11.0)

        assert first.session.phase == Phase.VOTING
        assert second.session is first.session
        assert second.session.voting_ends_at == 40.0

    def test_timeout_from_previous_round_is_ignored(self):
        """A timeout tagged with an old round number does nothing."""
        session = started_game([C, U, C, C], phase=Phase.VOTING)
        session.round_count = 3

        result = judge(session, "submit_vote", single_vote={"voter": "p0", "target": "skip"}, timeout=True, round_number=2)

        assert result.session.pending_votes == {}

    def test_timeout_skip_keeps_real_vote(self):
        """An auto-skip does not overwrite a vote the player already cast."""
        session = started_game([C, U, C, C], phase=Phase.VOTING)
        session.pending_votes = {"p0": "p1"}

        result = judge(session, "submit_vote", single_vote={"voter": "p0", "target": "skip"}, timeout=True)

        assert result.session.pending_votes == {"p0": "p1"}

    def test_timeout_skip_for_silent_voter(self):
        """An auto-skip counts for a player who never voted."""
        session = started_game([C, U, C, C], phase=Phase.VOTING)

        result = judge(session, "submit_vote", single_vote={"voter": "p3", "target": "skip"}, timeout=True)

        assert result.session.pending_votes == {"p3": "skip"}

    def test_first_vote_timeout_during_sudden_death_revote(self):
        """A first-vote timeout arriving during the sudden-death re-vote is ignored until the new deadline."""
        session = started_game([C, C, U, C, C], mode=GameMode.PARTY, phase=Phase.DISCUSSION)
        session = judge(session, "end_discussion", now=1000.0).session
        assert session.voting_ends_at == 1030.0

        session = vote(session, {"p0": "p1", "p1": "p3", "p2": "p1", "p3": "p3", "p4": "skip"}).session
        assert session.phase == Phase.SPEAKING_PK
        session, _ = speak_until_done(session)
        assert session.phase == Phase.VOTING
        assert session.voting_ends_at == 3030.0

        skip = {"voter": "p0", "target": "skip"}
        late = judge(session, "submit_vote", single_vote=skip, timeout=True, round_number=1, now=1031.0)
        assert late.session is session
        assert late.session.pending_votes == {}

        due = judge(session, "submit_vote", single_vote=skip, timeout=True, round_number=1, now=3031.0)
        assert due.session.pending_votes == {"p0": "skip"}


class TestSessionValue:
    """Sessions behave as plain values."""

    def test_input_session_is_not_mutated(self):
        session = started_game([C, U, C, C])
        before = session.to_dict()

        judge(session, "player_speak")

        assert session.to_dict() == before

    def test_dict_round_trip(self):
        session = started_game([C, U, W, C], mode=GameMode.PARTY, phase=Phase.VOTING)
        session.pending_votes = {"p0": "p2"}

        restored = GameSession.from_dict(session.to_dict())

        assert restored == session
        assert restored.players[2].role == Role.MR_WHITE

    def test_error_result_response(self):
        result = judge(make_session(2), "start_game")

        assert result.to_response() == {"error": "InsufficientPlayers", "detail": "At least 3 players are needed."}
