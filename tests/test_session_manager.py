"""Tests for the application-level session manager."""

import os

import pytest

from session.manager import NoActiveSession, SessionManager, unique_path
from session.models import SessionState
from session.peer import PeerSession
from transport.base import Role


@pytest.fixture
def manager(loopback, settings, tmp_path):
    return SessionManager(
        transport_factory=lambda: loopback,
        settings=settings,
        save_dir=str(tmp_path / "inbox"),
    )


class TestUniquePath:
    def test_free_name_is_kept(self, tmp_path):
        assert unique_path(str(tmp_path), "a.txt") == str(tmp_path / "a.txt")

    def test_existing_files_are_never_overwritten(self, tmp_path):
        (tmp_path / "a.txt").write_text("1")
        (tmp_path / "a (1).txt").write_text("2")
        assert unique_path(str(tmp_path), "a.txt") == str(tmp_path / "a (2).txt")

    def test_directory_components_are_stripped(self, tmp_path):
        assert unique_path(str(tmp_path), "../../etc/passwd") == str(tmp_path / "passwd")


class TestSessionManager:
    def test_snapshot_without_session(self, manager):
        assert manager.snapshot() == {"state": "idle"}
        with pytest.raises(NoActiveSession):
            manager.require()

    @pytest.mark.asyncio
    async def test_start_session(self, manager):
        session = await manager.start_session(Role.INITIATOR)
        snap = manager.snapshot()
        assert snap["state"] == SessionState.AWAITING_LOCAL_SIGNAL.value
        assert snap["role"] == "initiator"
        assert snap["share_code"] == session.share_code
        assert snap["local_signal"] == session.local_signal
        await manager.stop()
        assert session.state.is_terminal

    @pytest.mark.asyncio
    async def test_new_session_replaces_the_old_one(self, manager):
        first = await manager.start_session(Role.INITIATOR)
        second = await manager.start_session(Role.RESPONDER)
        assert first.state == SessionState.FAILED
        assert manager.current is second
        await manager.stop()

    @pytest.mark.asyncio
    async def test_received_file_is_saved(self, manager, loopback, settings, make_file, recorder_factory, eventually):
        events = recorder_factory(manager)
        receiver = await manager.start_session(Role.RESPONDER)
        sender = PeerSession(loopback, settings)
        await sender.start(Role.INITIATOR)
        await receiver.supply_remote_signal(sender.local_signal)
        await sender.supply_remote_signal(receiver.local_signal)
        await sender.wait_for(SessionState.CONNECTED, timeout=2)

        path, data = make_file(70000, name="photo.jpg")
        await sender.send_file(path)
        await receiver.wait_for(SessionState.CONFIRMING, timeout=2)

        offered = events.of("file_offered")[0]
        assert offered["name"] == "photo.jpg"
        assert offered["mime_type"] == "image/jpeg"

        await receiver.accept()
        await eventually(lambda: manager.saved_files)

        saved = manager.saved_files[0]
        assert os.path.dirname(saved) == manager.save_dir
        with open(saved, "rb") as f:
            assert f.read() == data

        completed = events.of("completed")[0]
        assert completed["saved_path"] == saved
        assert completed["direction"] == "receiving"
        assert any(n["type"] == "success" for n in events.of("notification"))
        assert events.of("state_changed")[-1] == {"state": "completed"}

    @pytest.mark.asyncio
    async def test_failure_becomes_error_notification(self, manager, loopback, settings, recorder_factory):
        events = recorder_factory(manager)
        receiver = await manager.start_session(Role.RESPONDER)
        sender = PeerSession(loopback, settings)
        await sender.start(Role.INITIATOR)
        await receiver.supply_remote_signal(sender.local_signal)
        await sender.supply_remote_signal(receiver.local_signal)

        await loopback.channels[0].fail("link lost")

        assert events.of("failed") == [{"kind": "transport", "message": "link lost"}]
        notification = events.of("notification")[-1]
        assert notification["type"] == "error"
        assert "link lost" in notification["message"]
        await sender.close()

    def test_save_dir_is_created(self, manager, tmp_path):
        target = tmp_path / "elsewhere" / "deep"
        manager.save_dir = str(target)
        assert target.is_dir()
