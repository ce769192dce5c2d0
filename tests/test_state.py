"""Tests for session state, previews, and the session store."""

from __future__ import annotations

import time

import pytest

from rpsclassifier.errors import NO_FILE_MESSAGE, PredictionInProgressError
from rpsclassifier.ml.classifier import format_scores
from rpsclassifier.previews import PreviewStore
from rpsclassifier.state import ClassifierSession, Phase, SelectedFile, SessionStore


def _file(name: str = "rock.png") -> SelectedFile:
    return SelectedFile(filename=name, content_type="image/png", data=b"\x89PNG fake")


@pytest.fixture()
def previews() -> PreviewStore:
    return PreviewStore()


@pytest.fixture()
def session() -> ClassifierSession:
    return ClassifierSession("s1")


def _select(session: ClassifierSession, previews: PreviewStore, name: str = "rock.png") -> None:
    selected = _file(name)
    session.select_file(selected, previews.create(selected.data, selected.content_type))


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    def test_starts_idle(self, session: ClassifierSession) -> None:
        assert session.phase is Phase.IDLE
        assert session.can_predict is False
        assert session.result_text is None

    def test_predict_without_file_prompts(self, session: ClassifierSession) -> None:
        assert session.begin_prediction() is None
        assert session.phase is Phase.IDLE
        assert session.message == NO_FILE_MESSAGE
        assert session.sequence == 0

    def test_select_enables_predict(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        assert session.phase is Phase.FILE_SELECTED
        assert session.can_predict is True
        assert session.file is not None
        assert session.file.filename == "rock.png"

    def test_predicting_disables_trigger(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None
        assert session.phase is Phase.PREDICTING
        assert session.can_predict is False
        with pytest.raises(PredictionInProgressError):
            session.begin_prediction()

    def test_complete_sets_result(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None

        assert session.complete(sequence, [0.1, 0.2, 0.7]) is True
        assert session.phase is Phase.RESULTED
        assert session.scores == [0.1, 0.2, 0.7]
        assert session.result_text == "0.1,0.2,0.7"
        assert session.can_predict is True

    def test_fail_sets_error(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None

        assert session.fail(sequence, "Prediction Error.") is True
        assert session.phase is Phase.ERROR
        assert session.result_text == "Prediction Error."
        assert session.can_predict is True

    def test_rerun_after_result(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        first = session.begin_prediction()
        assert first is not None
        session.complete(first, [1.0])

        second = session.begin_prediction()
        assert second == first + 1
        assert session.scores is None

    def test_select_resets_from_any_phase(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None
        session.fail(sequence, "boom")

        _select(session, previews, "paper.png")
        assert session.phase is Phase.FILE_SELECTED
        assert session.message is None


# ---------------------------------------------------------------------------
# Stale completions
# ---------------------------------------------------------------------------


class TestStaleCompletions:
    def test_new_file_while_predicting_discards_result(
        self, session: ClassifierSession, previews: PreviewStore
    ) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None

        _select(session, previews, "paper.png")
        assert session.phase is Phase.FILE_SELECTED

        assert session.complete(sequence, [0.5, 0.5]) is False
        assert session.phase is Phase.FILE_SELECTED
        assert session.scores is None

    def test_stale_failure_ignored(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None
        _select(session, previews, "paper.png")

        assert session.fail(sequence, "late error") is False
        assert session.message is None

    def test_only_latest_request_applies(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        old = session.begin_prediction()
        _select(session, previews, "paper.png")
        new = session.begin_prediction()
        assert old is not None
        assert new is not None

        assert session.complete(old, [0.9]) is False
        assert session.phase is Phase.PREDICTING
        assert session.complete(new, [0.1]) is True
        assert session.scores == [0.1]

    def test_completion_after_teardown_ignored(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        sequence = session.begin_prediction()
        assert sequence is not None
        session.teardown()

        assert session.complete(sequence, [0.3]) is False
        assert session.phase is Phase.IDLE


# ---------------------------------------------------------------------------
# Preview handles
# ---------------------------------------------------------------------------


class TestPreviews:
    def test_release_is_idempotent(self, previews: PreviewStore) -> None:
        handle = previews.create(b"abc", "image/png")
        assert previews.active_count == 1

        assert handle.release() is True
        assert handle.release() is False
        assert handle.released is True
        assert previews.active_count == 0

    def test_released_blob_unavailable(self, previews: PreviewStore) -> None:
        handle = previews.create(b"abc", "image/png")
        assert previews.get(handle.handle_id).data == b"abc"
        handle.release()
        with pytest.raises(KeyError, match="Unknown preview"):
            previews.get(handle.handle_id)

    def test_replacing_file_releases_old_preview(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        first = session.preview
        assert first is not None

        _select(session, previews, "paper.png")
        assert first.released is True
        assert session.preview is not None
        assert session.preview.released is False
        assert previews.active_count == 1

    def test_teardown_releases_once(self, session: ClassifierSession, previews: PreviewStore) -> None:
        _select(session, previews)
        handle = session.preview
        assert handle is not None

        session.teardown()
        session.teardown()
        assert handle.released is True
        assert session.preview is None
        assert session.phase is Phase.IDLE
        assert previews.active_count == 0

    def test_url(self, previews: PreviewStore) -> None:
        handle = previews.create(b"abc", "image/png")
        assert handle.url == f"/previews/{handle.handle_id}"


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------


class TestSessionStore:
    def test_create_and_get(self, previews: PreviewStore) -> None:
        store = SessionStore(previews)
        session = store.create()
        assert store.get(session.session_id) is session
        assert store.active_count == 1

    def test_unknown_session_raises_keyerror(self, previews: PreviewStore) -> None:
        store = SessionStore(previews)
        with pytest.raises(KeyError, match="Unknown session"):
            store.get("nope")

    def test_get_or_create_replaces_unknown_id(self, previews: PreviewStore) -> None:
        store = SessionStore(previews)
        session = store.get_or_create("stale-cookie")
        assert session.session_id != "stale-cookie"
        assert store.get_or_create(session.session_id) is session
        assert store.get_or_create(None) is not session

    def test_discard_releases_preview(self, previews: PreviewStore) -> None:
        store = SessionStore(previews)
        session = store.create()
        _select(session, previews)

        assert store.discard(session.session_id) is True
        assert store.discard(session.session_id) is False
        assert previews.active_count == 0

    def test_evict_idle(self, previews: PreviewStore) -> None:
        store = SessionStore(previews, ttl=10)
        idle = store.create()
        fresh = store.create()
        _select(idle, previews)
        idle.last_seen = time.monotonic() - 60

        assert store.evict_idle() == 1
        assert store.active_count == 1
        assert store.get(fresh.session_id) is fresh
        assert previews.active_count == 0

    def test_evict_skipped_when_ttl_zero(self, previews: PreviewStore) -> None:
        store = SessionStore(previews, ttl=0)
        session = store.create()
        session.last_seen = time.monotonic() - 10_000
        assert store.evict_idle() == 0
        assert store.active_count == 1

    def test_shutdown_tears_down_all(self, previews: PreviewStore) -> None:
        store = SessionStore(previews)
        for _ in range(3):
            _select(store.create(), previews)
        assert previews.active_count == 3

        store.shutdown()
        assert store.active_count == 0
        assert previews.active_count == 0

    def test_shutdown_drops_orphaned_previews(self, previews: PreviewStore) -> None:
        store = SessionStore(previews)
        orphan = previews.create(b"png", "image/png")

        store.shutdown()

        assert previews.active_count == 0
        with pytest.raises(KeyError):
            previews.get(orphan.handle_id)


def test_format_scores() -> None:
    assert format_scores([0.25, 0.75]) == "0.25,0.75"
    assert format_scores([]) == ""
    assert format_scores([1e-9, 3.0]) == "1e-09,3.0"
    assert format_scores([0.123456789, 0.876543211]) == "0.123456789,0.876543211"
