"""Tests for NotesManager, driven without any UI toolkit."""

import unittest

from cloud_store import RecordStore, StoreApiError, StoreAuthError, StoreRateLimited
from debouncer import EditDebouncer, ManualScheduler
from note_record import CKRecord, Note, encode, from_millis
from notes_manager import NoteState, NotesManager, NoteWindowHandle, TaskRunner, describe_error


class FakeStore(RecordStore):
    def __init__(self, notes=()):
        self.records = {n.note_id: encode(n).to_wire() for n in notes}
        self.calls = []
        self.fail_query = None
        self.fail_save = None
        self.fail_delete = None

    def query_all(self):
        self.calls.append(("query_all",))
        if self.fail_query:
            raise self.fail_query
        return list(self.records.values())

    def save(self, record):
        rec = CKRecord.model_validate(record)
        self.calls.append(("save", rec.recordName, rec.fields["content"].value))
        if self.fail_save:
            raise self.fail_save
        self.records[rec.recordName] = rec.to_wire()

    def delete(self, note_id):
        self.calls.append(("delete", note_id))
        if self.fail_delete:
            raise self.fail_delete
        self.records.pop(note_id, None)


class DeferredRunner(TaskRunner):
    """Holds submitted calls until run_all(), like completions waiting on the event loop."""

    def __init__(self):
        self.queue = []

    def submit(self, fn, on_success, on_failure):
        self.queue.append((fn, on_success, on_failure))

    def run_all(self):
        while self.queue:
            fn, on_success, on_failure = self.queue.pop(0)
            try:
                result = fn()
            except Exception as exc:
                on_failure(exc)
            else:
                on_success(result)


class FakeWindow(NoteWindowHandle):
    def __init__(self, note, manager, clock):
        self.note = note
        self.note_id = note.note_id
        self.manager = manager
        self.debouncer = EditDebouncer(clock, lambda: self.note, manager.update_note, interval=0.5)
        self.shown = False
        self.raised = 0
        self.dismissed = False

    def show(self):
        self.shown = True

    def raise_note(self):
        self.raised += 1

    def dismiss(self):
        self.dismissed = True

    def type(self, text):
        self.note = self.note.edited(text)
        self.debouncer.on_edit()

    def user_close(self):
        self.debouncer.flush()
        self.manager.close_window(self.note_id)


def make_note(note_id, content, ms=1715790000000):
    return Note(note_id, content, from_millis(ms))


class NotesManagerTestCase(unittest.TestCase):
    def setUp(self):
        self.clock = ManualScheduler()
        self.runner = DeferredRunner()
        self.errors = []
        self.windows = []
        self.store = FakeStore()
        self.manager = self.make_manager(self.store)

    def make_manager(self, store):
        def window_factory(note, manager):
            window = FakeWindow(note, manager, self.clock)
            self.windows.append(window)
            return window

        return NotesManager(
            store=store,
            runner=self.runner,
            window_factory=window_factory,
            report_error=lambda title, message: self.errors.append((title, message)),
        )

    def launch_with(self, notes, extra_records=()):
        self.store.records = {n.note_id: encode(n).to_wire() for n in notes}
        for i, raw in enumerate(extra_records):
            self.store.records[f"extra-{i}"] = raw
        self.manager.launch()
        self.runner.run_all()

    def saves(self):
        return [c for c in self.store.calls if c[0] == "save"]


class LaunchTest(NotesManagerTestCase):
    def test_launch_opens_one_window_per_valid_record(self):
        malformed = {
            "recordName": "broken",
            "recordType": "StickyNote",
            "fields": {"content": {"value": "no timestamp"}},
        }
        a = make_note("a", "first")
        b = make_note("b", "second")
        self.launch_with([a, b], extra_records=[malformed])

        self.assertEqual(sorted(self.manager.open_note_ids), ["a", "b"])
        self.assertEqual(len(self.windows), 2)
        self.assertTrue(all(w.shown for w in self.windows))
        self.assertEqual({w.note_id: w.note.content for w in self.windows}, {"a": "first", "b": "second"})
        self.assertEqual(self.manager.notes, (a, b))
        self.assertEqual(self.errors, [])

    def test_launch_failure_reports_and_leaves_collection_empty(self):
        self.store.fail_query = StoreApiError("HTTP 500")
        self.manager.launch()
        self.runner.run_all()

        self.assertEqual(self.manager.notes, ())
        self.assertEqual(self.manager.open_note_ids, [])
        self.assertEqual(len(self.errors), 1)
        self.assertEqual(self.errors[0][0], "Could Not Load Notes")
        # no retry was scheduled
        self.assertEqual(self.runner.queue, [])

    def test_state_is_loading_while_fetch_in_flight(self):
        self.store.records = {"a": encode(make_note("a", "x")).to_wire()}
        self.manager.launch()
        self.assertEqual(self.manager.state_of("a"), NoteState.LOADING)
        self.runner.run_all()
        self.assertEqual(self.manager.state_of("a"), NoteState.VISIBLE)

    def test_note_created_during_fetch_is_kept(self):
        self.store.records = {"a": encode(make_note("a", "remote")).to_wire()}
        self.manager.launch()
        created = self.manager.create_note()
        self.runner.run_all()

        ids = [n.note_id for n in self.manager.notes]
        self.assertEqual(ids, ["a", created.note_id])
        self.assertEqual(len(self.windows), 2)


class CreateTest(NotesManagerTestCase):
    def test_window_opens_before_save_completes(self):
        note = self.manager.create_note()

        self.assertEqual(note.content, "")
        self.assertEqual(self.manager.notes, (note,))
        self.assertEqual(self.manager.open_note_ids, [note.note_id])
        self.assertTrue(self.windows[0].shown)
        self.assertEqual(self.store.records, {})

        self.runner.run_all()
        self.assertIn(note.note_id, self.store.records)

    def test_save_failure_keeps_note_and_window(self):
        self.store.fail_save = StoreApiError("HTTP 500")
        note = self.manager.create_note()
        self.runner.run_all()

        self.assertEqual(self.manager.notes, (note,))
        self.assertEqual(self.manager.open_note_ids, [note.note_id])
        self.assertFalse(self.windows[0].dismissed)
        self.assertEqual([t for t, _ in self.errors], ["Could Not Save New Note"])

    def test_create_with_initial_content(self):
        note = self.manager.create_note("from clipboard")
        self.runner.run_all()
        self.assertEqual(self.saves(), [("save", note.note_id, "from clipboard")])


class UpdateTest(NotesManagerTestCase):
    def setUp(self):
        super().setUp()
        self.launch_with([make_note("a", "one")])
        self.window = self.windows[0]

    def test_typing_saves_once_after_idle(self):
        for text in ("o", "on", "one!", "one!!"):
            self.window.type(text)
            self.clock.advance(0.1)
        self.assertEqual(self.manager.state_of("a"), NoteState.EDITING)

        self.clock.advance(0.5)
        self.runner.run_all()

        self.assertEqual(self.saves(), [("save", "a", "one!!")])
        self.assertEqual(self.manager.note("a").content, "one!!")
        self.assertEqual(self.manager.state_of("a"), NoteState.VISIBLE)

    def test_update_replaces_entry_by_identity(self):
        edited = self.manager.note("a").edited("two")
        self.manager.update_note(edited)
        self.assertEqual(self.manager.notes, (edited,))

    def test_update_failure_does_not_revert(self):
        self.store.fail_save = StoreAuthError("HTTP 401: unauthorized")
        edited = self.manager.note("a").edited("two")
        self.manager.update_note(edited)
        self.runner.run_all()

        self.assertEqual(self.manager.note("a"), edited)
        self.assertEqual(len(self.errors), 1)
        self.assertEqual(self.errors[0][0], "Could Not Save Note")
        self.assertIn("signed in", self.errors[0][1])

    def test_update_for_unknown_note_is_ignored(self):
        self.manager.update_note(make_note("ghost", "boo"))
        self.runner.run_all()
        self.assertEqual(self.saves(), [])
        self.assertIsNone(self.manager.note("ghost"))


class DeleteTest(NotesManagerTestCase):
    def setUp(self):
        super().setUp()
        self.launch_with([make_note("a", "keep"), make_note("b", "doomed")])

    def test_delete_failure_keeps_note_and_window(self):
        self.store.fail_delete = StoreApiError("HTTP 500")
        self.manager.delete_note("b")
        self.runner.run_all()

        self.assertIsNotNone(self.manager.note("b"))
        self.assertIn("b", self.manager.open_note_ids)
        self.assertFalse(self.windows[1].dismissed)
        self.assertEqual([t for t, _ in self.errors], ["Could Not Delete Note"])

    def test_delete_is_not_optimistic(self):
        self.manager.delete_note("b")
        self.assertIsNotNone(self.manager.note("b"))
        self.assertIn("b", self.manager.open_note_ids)

    def test_delete_success_removes_note_and_window(self):
        self.manager.delete_note("b")
        self.runner.run_all()

        self.assertIsNone(self.manager.note("b"))
        self.assertEqual(self.manager.open_note_ids, ["a"])
        self.assertTrue(self.windows[1].dismissed)
        self.assertNotIn("b", self.store.records)
        self.assertEqual(self.manager.state_of("b"), NoteState.ABSENT)

    def test_delete_drops_pending_edit(self):
        self.windows[1].type("last words")
        self.manager.delete_note("b")
        self.runner.run_all()
        self.clock.advance(1.0)
        self.runner.run_all()

        self.assertEqual(self.saves(), [])
        self.assertNotIn("b", self.store.records)

    def test_retry_after_failed_delete(self):
        self.store.fail_delete = StoreApiError("HTTP 500")
        self.manager.delete_note("b")
        self.runner.run_all()
        self.store.fail_delete = None
        self.manager.delete_note("b")
        self.runner.run_all()
        self.assertIsNone(self.manager.note("b"))


class CloseAndFlushTest(NotesManagerTestCase):
    def setUp(self):
        super().setUp()
        self.launch_with([make_note("a", "A"), make_note("b", "B")])

    def test_close_removes_only_that_registry_entry(self):
        before = self.manager.notes
        self.manager.close_window("a")
        self.assertEqual(self.manager.open_note_ids, ["b"])
        self.assertEqual(self.manager.notes, before)
        self.assertEqual(self.manager.state_of("a"), NoteState.ABSENT)

    def test_close_flushes_pending_edit(self):
        self.windows[0].type("A edited")
        self.windows[0].user_close()
        self.runner.run_all()

        self.assertEqual(self.saves(), [("save", "a", "A edited")])
        self.assertEqual(self.manager.note("a").content, "A edited")
        self.assertEqual(self.clock.pending, 0)

    def test_close_unknown_window_is_ignored(self):
        self.manager.close_window("nope")
        self.assertEqual(sorted(self.manager.open_note_ids), ["a", "b"])

    def test_reopen_closed_note(self):
        self.manager.close_window("a")
        self.manager.open_note("a")
        self.assertIn("a", self.manager.open_note_ids)
        self.assertEqual(len(self.windows), 3)

    def test_open_note_raises_existing_window(self):
        self.manager.open_note("b")
        self.assertEqual(self.windows[1].raised, 1)
        self.assertEqual(len(self.windows), 2)

    def test_flush_all_persists_every_pending_edit(self):
        self.windows[0].type("A2")
        self.windows[1].type("B2")
        self.manager.flush_all()
        self.runner.run_all()

        self.assertEqual(sorted(self.saves()), [("save", "a", "A2"), ("save", "b", "B2")])
        self.assertEqual(self.clock.pending, 0)

    def test_flush_all_when_idle_saves_nothing(self):
        self.manager.flush_all()
        self.runner.run_all()
        self.assertEqual(self.saves(), [])


class DescribeErrorTest(unittest.TestCase):
    def test_rate_limited_mentions_delay(self):
        self.assertIn("30 seconds", describe_error(StoreRateLimited("429", retry_after=30.0)))

    def test_plain_error_uses_message(self):
        self.assertEqual(describe_error(StoreApiError("HTTP 500")), "HTTP 500")


if __name__ == "__main__":
    unittest.main()
