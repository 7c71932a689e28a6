"""
The notes manager owns the in-memory collection of notes and the registry of
open note windows, and keeps both in step with the record store.

It never touches a toolkit directly. Everything it needs from the outside is
passed in:

  - store:          a cloud_store.RecordStore
  - runner:         a TaskRunner; runs blocking store calls elsewhere and calls
                    back on the UI thread
  - window_factory: ``(note, manager) -> NoteWindowHandle``; builds (but does
                    not show) the window for one note
  - report_error:   ``(title, message) -> None``; shows an alert to the user
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from cloud_store import RecordStore, StoreAuthError, StoreRateLimited
from debouncer import EditDebouncer
from note_record import Note, decode, encode

LOGGER = logging.getLogger(__name__)


class NoteState(Enum):
    ABSENT = "absent"
    LOADING = "loading"
    VISIBLE = "visible"
    EDITING = "editing"
    CLOSING = "closing"


class TaskRunner:
    """
    Runs ``fn`` away from the UI thread. Exactly one of ``on_success(result)``
    or ``on_failure(exc)`` is later called on the UI thread.
    """

    def submit(
        self,
        fn: Callable[[], Any],
        on_success: Callable[[Any], None],
        on_failure: Callable[[BaseException], None],
    ) -> None:
        raise NotImplementedError


class NoteWindowHandle:
    """What the manager expects from a note window."""

    note_id: str
    debouncer: EditDebouncer

    def show(self) -> None:
        raise NotImplementedError

    def raise_note(self) -> None:
        raise NotImplementedError

    def dismiss(self) -> None:
        """Close the window without flushing or notifying the manager."""
        raise NotImplementedError


WindowFactory = Callable[[Note, "NotesManager"], NoteWindowHandle]
ErrorReporter = Callable[[str, str], None]


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, StoreAuthError):
        return "Your cloud account rejected the request. Check that you are signed in and try again."
    if isinstance(exc, StoreRateLimited):
        if exc.retry_after:
            return f"The server is busy. Try again in {exc.retry_after:g} seconds."
        return "The server is busy. Try again in a moment."
    return str(exc) or exc.__class__.__name__


class NotesManager:
    def __init__(
        self,
        store: RecordStore,
        runner: TaskRunner,
        window_factory: WindowFactory,
        report_error: ErrorReporter,
    ):
        self._store = store
        self._runner = runner
        self._window_factory = window_factory
        self._report_error = report_error

        self._notes: List[Note] = []
        self._windows: Dict[str, NoteWindowHandle] = {}
        self._loading = False
        self._closing: Set[str] = set()
        # save calls issued but not yet completed, per note id
        self._saves_in_flight: Dict[str, int] = {}

    # ----- Views -----

    @property
    def notes(self) -> Tuple[Note, ...]:
        return tuple(self._notes)

    @property
    def open_note_ids(self) -> List[str]:
        return list(self._windows)

    def note(self, note_id: str) -> Optional[Note]:
        index = self._index(note_id)
        return None if index is None else self._notes[index]

    def window(self, note_id: str) -> Optional[NoteWindowHandle]:
        return self._windows.get(note_id)

    def state_of(self, note_id: str) -> NoteState:
        if note_id in self._closing:
            return NoteState.CLOSING
        window = self._windows.get(note_id)
        if window is not None:
            return NoteState.EDITING if window.debouncer.pending else NoteState.VISIBLE
        if self._loading:
            return NoteState.LOADING
        return NoteState.ABSENT

    def _index(self, note_id: str) -> Optional[int]:
        for i, note in enumerate(self._notes):
            if note.note_id == note_id:
                return i
        return None

    # ----- Launch -----

    def launch(self) -> None:
        """Fetch every note and open a window for each."""
        LOGGER.info("Fetching notes")
        self._loading = True
        self._runner.submit(self._store.query_all, self._on_fetched, self._on_fetch_failed)

    def _on_fetched(self, records: List[Dict[str, Any]]) -> None:
        self._loading = False
        fetched: List[Note] = []
        for raw in records:
            note = decode(raw)
            if note is None:
                LOGGER.debug("Dropping undecodable record: %r", raw)
                continue
            fetched.append(note)

        # Notes created while the fetch was running already have windows;
        # keep them unless the server returned them too.
        fetched_ids = {note.note_id for note in fetched}
        created_meanwhile = [
            note
            for note in self._notes
            if note.note_id not in fetched_ids and note.note_id in self._windows
        ]
        self._notes = fetched + created_meanwhile
        LOGGER.info(
            "Loaded %d notes (%d records dropped)", len(fetched), len(records) - len(fetched)
        )
        for note in fetched:
            self._open_window(note)

    def _on_fetch_failed(self, exc: BaseException) -> None:
        self._loading = False
        self._report("Could Not Load Notes", exc)

    # ----- Create / update / delete -----

    def create_note(self, content: str = "") -> Note:
        note = Note.new(content)
        LOGGER.info("Creating note %s", note.note_id)
        self._notes.append(note)
        self._open_window(note)
        self._save(note, "Could Not Save New Note")
        return note

    def update_note(self, note: Note) -> None:
        index = self._index(note.note_id)
        if index is None:
            LOGGER.debug("Ignoring update for unknown note %s", note.note_id)
            return
        self._notes[index] = note
        self._save(note, "Could Not Save Note")

    def _save(self, note: Note, failure_title: str) -> None:
        note_id = note.note_id
        record = encode(note)
        self._saves_in_flight[note_id] = self._saves_in_flight.get(note_id, 0) + 1

        def done() -> None:
            remaining = self._saves_in_flight.get(note_id, 0) - 1
            if remaining > 0:
                self._saves_in_flight[note_id] = remaining
            else:
                self._saves_in_flight.pop(note_id, None)

        def on_success(_result: Any) -> None:
            done()
            LOGGER.debug("Saved note %s", note_id)

        def on_failure(exc: BaseException) -> None:
            done()
            self._report(failure_title, exc)

        self._runner.submit(lambda: self._store.save(record), on_success, on_failure)

    def delete_note(self, note_id: str) -> None:
        """Delete remotely; the note and its window go away only once that succeeds."""
        in_flight = self._saves_in_flight.get(note_id, 0)
        if in_flight:
            LOGGER.warning("Deleting note %s with %d save(s) still in flight", note_id, in_flight)
        LOGGER.info("Deleting note %s", note_id)

        def on_success(_result: Any) -> None:
            index = self._index(note_id)
            if index is not None:
                del self._notes[index]
            window = self._windows.pop(note_id, None)
            if window is not None:
                window.debouncer.cancel()
                window.dismiss()
            LOGGER.info("Deleted note %s", note_id)

        def on_failure(exc: BaseException) -> None:
            self._report("Could Not Delete Note", exc)

        self._runner.submit(lambda: self._store.delete(note_id), on_success, on_failure)

    # ----- Windows -----

    def open_note(self, note_id: str) -> None:
        window = self._windows.get(note_id)
        if window is not None:
            window.raise_note()
            return
        note = self.note(note_id)
        if note is not None:
            self._open_window(note)

    def _open_window(self, note: Note) -> NoteWindowHandle:
        window = self._windows.get(note.note_id)
        if window is not None:
            return window
        window = self._window_factory(note, self)
        self._windows[note.note_id] = window
        window.show()
        return window

    def close_window(self, note_id: str) -> None:
        """Called by a window the user closed. The note stays in the collection."""
        window = self._windows.get(note_id)
        if window is None:
            return
        self._closing.add(note_id)
        try:
            window.debouncer.flush()
        finally:
            self._closing.discard(note_id)
        del self._windows[note_id]
        LOGGER.debug("Closed window for note %s", note_id)

    def flush_all(self) -> None:
        """Persist every pending edit now. Called once at quit."""
        LOGGER.info("Flushing %d open notes", len(self._windows))
        for window in list(self._windows.values()):
            window.debouncer.flush()

    # ----- Errors -----

    def _report(self, title: str, exc: BaseException) -> None:
        LOGGER.error("%s: %s: %s", title, exc.__class__.__name__, exc)
        self._report_error(title, describe_error(exc))
