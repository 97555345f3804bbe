"""Tests for transport-independent command dispatch."""

import pytest

from exam_timer.errors import (
    InvalidDuration,
    MissingRoomId,
    RoomFull,
    RoomNotFound,
    Unauthorized,
    UnknownCommand,
)
from exam_timer.models import SessionStatus

from .fakes import STUDENT_TOKEN, TEACHER_TOKEN


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, message):
        self.sent.append(message)


class BrokenSocket:
    async def send_json(self, message):
        raise RuntimeError("connection lost")


def connect(command_router, client_id: str) -> FakeSocket:
    ws = FakeSocket()
    command_router.broadcaster.connect(client_id, ws)
    return ws


class TestDispatch:
    async def test_start_ack(self, command_router):
        ack = await command_router.dispatch(
            "start", {"roomId": 7, "duration": 3}, TEACHER_TOKEN
        )
        assert ack["message"] == "Exam started"
        assert ack["roomId"] == "7"
        assert ack["duration"] == 3
        assert ack["applied"] is True
        assert ack["outcome"] == "applied"
        assert ack["status"] == "running"
        assert ack["timeLeft"] == 3
        assert ack["timeFormatted"] == "00:00:03"
        assert ack["clients"] == 0

    async def test_numeric_and_string_ids_share_a_room(self, command_router, registry):
        await command_router.dispatch("start", {"roomId": 42, "duration": 60}, TEACHER_TOKEN)
        ack = await command_router.dispatch("pause", {"roomId": "42"}, TEACHER_TOKEN)
        assert ack["applied"] is True
        assert registry.get("42").status == SessionStatus.PAUSED
        assert len(registry) == 1

    async def test_pause_continue_stop(self, command_router, scheduler):
        await command_router.dispatch("start", {"roomId": "a", "duration": 10}, TEACHER_TOKEN)
        await scheduler.advance(2)

        ack = await command_router.dispatch("pause", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["message"] == "Exam paused"
        assert ack["timeLeft"] == 8

        ack = await command_router.dispatch("continue", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["message"] == "Exam continued"
        assert ack["status"] == "running"

        ack = await command_router.dispatch("stop", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["message"] == "Exam stopped"
        assert ack["timeLeft"] == 0
        assert ack["status"] == "stopped"

    async def test_soft_outcomes(self, command_router):
        await command_router.dispatch("start", {"roomId": "a", "duration": 10}, TEACHER_TOKEN)

        ack = await command_router.dispatch("continue", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["applied"] is False
        assert ack["outcome"] == "already_running"
        assert ack["message"] == "Exam already running"

        await command_router.dispatch("pause", {"roomId": "a"}, TEACHER_TOKEN)
        ack = await command_router.dispatch("pause", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["outcome"] == "nothing_to_pause"

        await command_router.dispatch("stop", {"roomId": "a"}, TEACHER_TOKEN)
        ack = await command_router.dispatch("stop", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["outcome"] == "already_finished"

        ack = await command_router.dispatch("continue", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["outcome"] == "nothing_to_resume"

    async def test_configure_then_start(self, command_router):
        ack = await command_router.dispatch(
            "configure", {"roomId": "a", "duration": 120}, TEACHER_TOKEN
        )
        assert ack["status"] == "idle"
        ack = await command_router.dispatch("start", {"roomId": "a"}, TEACHER_TOKEN)
        assert ack["duration"] == 120
        assert ack["status"] == "running"

    async def test_missing_room_id(self, command_router):
        with pytest.raises(MissingRoomId):
            await command_router.dispatch("start", {"duration": 10}, TEACHER_TOKEN)

    async def test_invalid_duration(self, command_router):
        with pytest.raises(InvalidDuration):
            await command_router.dispatch("start", {"roomId": "a", "duration": 0}, TEACHER_TOKEN)

    @pytest.mark.parametrize("command", ["pause", "continue", "stop"])
    async def test_room_not_found(self, command_router, command):
        with pytest.raises(RoomNotFound):
            await command_router.dispatch(command, {"roomId": "nowhere"}, TEACHER_TOKEN)

    async def test_unknown_command(self, command_router):
        with pytest.raises(UnknownCommand):
            await command_router.dispatch("explode", {"roomId": "a"}, TEACHER_TOKEN)

    async def test_requires_token(self, command_router, registry):
        with pytest.raises(Unauthorized):
            await command_router.dispatch("start", {"roomId": "a", "duration": 10}, None)
        assert registry.get("a") is None

    async def test_student_cannot_control(self, command_router):
        with pytest.raises(Unauthorized):
            await command_router.dispatch(
                "start", {"roomId": "a", "duration": 10}, STUDENT_TOKEN
            )

    async def test_auth_checked_before_room_lookup(self, command_router):
        with pytest.raises(Unauthorized):
            await command_router.dispatch("pause", {"roomId": "nowhere"}, "bogus")

    async def test_commands(self, command_router):
        assert set(command_router.commands) == {"start", "pause", "continue", "stop", "configure"}


class TestMembership:
    async def test_join_ack(self, command_router):
        connect(command_router, "c1")
        ack = await command_router.join("c1", {"roomId": 7, "role": "student"})
        assert ack == {"roomId": "7", "clientsInRoom": 1}

    async def test_join_notifies_others(self, command_router, broadcaster):
        first = connect(command_router, "c1")
        second = connect(command_router, "c2")
        await command_router.join("c1", {"roomId": "7", "role": "teacher"})
        await command_router.join("c2", {"roomId": "7", "role": "student"})

        assert first.sent == [
            {"type": "user_joined", "roomId": "7", "role": "student", "clientsInRoom": 2}
        ]
        assert second.sent == []

    async def test_join_running_room_includes_snapshot(self, command_router):
        await command_router.dispatch("start", {"roomId": "7", "duration": 30}, TEACHER_TOKEN)
        connect(command_router, "c1")
        ack = await command_router.join("c1", {"roomId": "7"})
        assert ack["snapshot"]["status"] == "running"
        assert ack["snapshot"]["timeLeft"] == 30

    async def test_join_requires_room_id(self, command_router):
        connect(command_router, "c1")
        with pytest.raises(MissingRoomId):
            await command_router.join("c1", {"role": "student"})

    async def test_join_full_room(self, command_router, broadcaster):
        broadcaster.max_clients_per_room = 1
        connect(command_router, "c1")
        connect(command_router, "c2")
        await command_router.join("c1", {"roomId": "7"})
        with pytest.raises(RoomFull):
            await command_router.join("c2", {"roomId": "7"})

    async def test_subscribers_receive_snapshots(self, command_router, scheduler):
        ws = connect(command_router, "c1")
        await command_router.join("c1", {"roomId": "7"})
        await command_router.dispatch("start", {"roomId": 7, "duration": 2}, TEACHER_TOKEN)
        await scheduler.advance(2)

        types = [m["type"] for m in ws.sent]
        assert types == ["start", "status", "status", "status"]
        assert ws.sent[-1]["completionReason"] == "timeup"

    async def test_leave(self, command_router):
        connect(command_router, "c1")
        await command_router.join("c1", {"roomId": "7"})
        ack = await command_router.leave("c1", {"roomId": "7"})
        assert ack == {"roomId": "7", "clientsInRoom": 0}

    async def test_disconnect_notifies_room(self, command_router, broadcaster):
        stay = connect(command_router, "c1")
        connect(command_router, "c2")
        await command_router.join("c1", {"roomId": "7"})
        await command_router.join("c2", {"roomId": "7"})
        stay.sent.clear()

        await command_router.disconnect("c2")
        assert stay.sent == [{"type": "user_left", "roomId": "7", "clientsInRoom": 1}]
        assert broadcaster.subscriber_count("7") == 1

    async def test_broken_subscriber_is_dropped(self, command_router, broadcaster, scheduler):
        command_router.broadcaster.connect("bad", BrokenSocket())
        good = connect(command_router, "good")
        await command_router.join("bad", {"roomId": "7"})
        await command_router.join("good", {"roomId": "7"})

        await command_router.dispatch("start", {"roomId": "7", "duration": 5}, TEACHER_TOKEN)
        assert broadcaster.subscriber_count("7") == 1
        assert "bad" not in broadcaster.clients
        assert any(m["type"] == "status" for m in good.sent)


class TestQueries:
    async def test_status(self, command_router):
        await command_router.dispatch("start", {"roomId": "7", "duration": 30}, TEACHER_TOKEN)
        snap = command_router.status({"roomId": 7})
        assert snap["timeLeft"] == 30
        assert snap["status"] == "running"

    async def test_status_missing_room(self, command_router):
        with pytest.raises(RoomNotFound):
            command_router.status({"roomId": "nowhere"})

    async def test_rooms(self, command_router):
        await command_router.dispatch("start", {"roomId": "a", "duration": 30}, TEACHER_TOKEN)
        await command_router.dispatch("configure", {"roomId": "b", "duration": 30}, TEACHER_TOKEN)
        assert len(command_router.rooms()) == 2
        idle = command_router.rooms(SessionStatus.IDLE)
        assert [r["roomId"] for r in idle] == ["b"]

    async def test_room(self, command_router):
        await command_router.dispatch("start", {"roomId": "a", "duration": 30}, TEACHER_TOKEN)
        assert command_router.room("a")["running"] is True

    async def test_discard(self, command_router, registry, scheduler):
        ws = connect(command_router, "c1")
        await command_router.join("c1", {"roomId": "a"})
        await command_router.dispatch("start", {"roomId": "a", "duration": 30}, TEACHER_TOKEN)
        await command_router.discard("a", TEACHER_TOKEN)

        assert registry.get("a") is None
        assert scheduler.live == []
        assert ws.sent[-1] == {"type": "room_closed", "roomId": "a"}

    async def test_discard_requires_teacher(self, command_router):
        await command_router.dispatch("start", {"roomId": "a", "duration": 30}, TEACHER_TOKEN)
        with pytest.raises(Unauthorized):
            await command_router.discard("a", STUDENT_TOKEN)
