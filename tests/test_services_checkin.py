"""
Unit tests for checkin_sync.services.checkin (the check-in session store).
"""
import uuid
import pytest
from unittest.mock import Mock

from checkin_sync.core.errors import (
    CheckInValidationError, NoActiveCheckInError, PersistenceError, RecordNotFoundError, SessionConflictError,
)
from checkin_sync.services.checkin import STEPS, CheckInStore, step_index
from checkin_sync.services.feed import ChangeEvent, InMemoryChangeFeed
from checkin_sync.services.gateway import GatewayResult, PersistenceGateway
from conftest import COUPLE_ID, PARTNER_ID, USER_ID, make_action_item, make_note, make_record


def failure(operation="op"):
    return GatewayResult(error=PersistenceError(f"{operation} failed"))


@pytest.fixture
def store(gateway):
    return CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gateway)


@pytest.fixture
async def active(store):
    result = await store.start_check_in(["communication", "goals"], mood_before=3)
    assert result.ok
    return store


class TestStepIndex:
    def test_known_and_unknown(self):
        assert step_index("warm-up") == 0
        assert step_index("completion") == len(STEPS) - 1
        assert step_index("nope") == -1


class TestStartCheckIn:
    """Test starting a check-in."""

    @pytest.mark.asyncio
    async def test_session_matches_server_record(self, store, gateway):
        result = await store.start_check_in(["communication", "goals"])

        server_id = gateway.insert_check_in.call_args.args[0]
        assert result.ok
        assert store.session.id == server_id
        assert store.session.status == "in-progress"
        assert store.session.current_step == "warm-up"
        assert store.session.selected_categories == ["communication", "goals"]
        assert set(store.session.category_progress) == {"communication", "goals"}

    @pytest.mark.asyncio
    async def test_duplicate_categories_collapsed(self, store, gateway):
        await store.start_check_in(["goals", "goals", "intimacy"])

        assert gateway.insert_check_in.call_args.args[3] == ["goals", "intimacy"]

    @pytest.mark.asyncio
    async def test_empty_categories_rejected(self, store, gateway):
        result = await store.start_check_in([])

        assert isinstance(result.error, CheckInValidationError)
        gateway.insert_check_in.assert_not_called()
        assert store.session is None

    @pytest.mark.asyncio
    async def test_invalid_mood_rejected(self, store, gateway):
        result = await store.start_check_in(["goals"], mood_before=9)

        assert isinstance(result.error, CheckInValidationError)
        gateway.insert_check_in.assert_not_called()

    @pytest.mark.asyncio
    async def test_conflict_while_active(self, active, gateway):
        result = await active.start_check_in(["intimacy"])

        assert isinstance(result.error, SessionConflictError)
        assert gateway.insert_check_in.call_count == 1

    @pytest.mark.asyncio
    async def test_failed_create_leaves_no_session(self, store, gateway):
        gateway.insert_check_in.side_effect = None
        gateway.insert_check_in.return_value = failure("insert_check_in")

        result = await store.start_check_in(["goals"])

        assert not result.ok
        assert store.session is None
        assert store.error is result.error

    @pytest.mark.asyncio
    async def test_unexpected_exception_wrapped(self, store, gateway):
        gateway.insert_check_in.side_effect = RuntimeError("socket closed")

        result = await store.start_check_in(["goals"])

        assert isinstance(result.error, PersistenceError)
        assert isinstance(result.error.cause, RuntimeError)
        assert store.session is None


class TestCompleteAndAbandon:
    """Test ending a check-in."""

    @pytest.mark.asyncio
    async def test_complete_clears_session(self, active, gateway):
        check_in_id = active.session.id
        result = await active.complete_check_in(mood_after=4, reflection="Felt heard")

        assert result.ok
        assert active.session is None
        gateway.update_check_in_status.assert_awaited_once_with(
            check_in_id, "completed", mood_after=4, reflection="Felt heard",
        )

    @pytest.mark.asyncio
    async def test_complete_clears_session_on_failure(self, active, gateway):
        gateway.update_check_in_status.side_effect = None
        gateway.update_check_in_status.return_value = failure("update_check_in_status")

        result = await active.complete_check_in()

        assert not result.ok
        assert active.session is None

    @pytest.mark.asyncio
    async def test_complete_without_session_is_noop(self, store, gateway):
        result = await store.complete_check_in()

        assert result.ok
        gateway.update_check_in_status.assert_not_called()

    @pytest.mark.asyncio
    async def test_complete_dispatches_summary(self, gateway):
        notifier = Mock()
        store = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gateway, notifier=notifier)
        await store.start_check_in(["goals"])
        check_in_id = store.session.id

        await store.complete_check_in()

        notifier.dispatch.assert_called_once_with(check_in_id)

    @pytest.mark.asyncio
    async def test_failed_complete_sends_no_summary(self, gateway):
        notifier = Mock()
        gateway.update_check_in_status.side_effect = None
        gateway.update_check_in_status.return_value = failure()
        store = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gateway, notifier=notifier)
        await store.start_check_in(["goals"])

        await store.complete_check_in()

        notifier.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_abandon(self, active, gateway):
        check_in_id = active.session.id
        await active.abandon_check_in()

        assert active.session is None
        gateway.update_check_in_status.assert_awaited_once_with(check_in_id, "abandoned")


class TestSteps:
    """Test local step navigation and progress."""

    @pytest.mark.asyncio
    async def test_complete_step_advances(self, active):
        active.complete_step("warm-up")

        assert active.session.current_step == "category-selection"
        assert active.is_step_completed("warm-up")
        assert active.progress_percentage == 17

    @pytest.mark.asyncio
    async def test_complete_last_step_stays(self, active):
        active.go_to_step("completion")
        active.complete_step("completion")

        assert active.session.current_step == "completion"

    @pytest.mark.asyncio
    async def test_complete_step_twice_counts_once(self, active):
        active.complete_step("warm-up")
        active.complete_step("warm-up")

        assert active.session.completed_steps == ["warm-up"]

    @pytest.mark.asyncio
    async def test_can_go_one_step_ahead(self, active):
        assert active.can_go_to_step("category-selection") is True
        assert active.can_go_to_step("category-discussion") is False
        assert active.can_go_to_step("warm-up") is True

    def test_no_session_is_noop(self, store):
        assert store.complete_step("warm-up") is False
        assert store.go_to_step("reflection") is False
        assert store.can_go_to_step("warm-up") is False
        assert store.progress_percentage == 0


class TestCategories:
    """Test category selection and progress."""

    @pytest.mark.asyncio
    async def test_select_categories_write_through(self, active, gateway):
        result = await active.select_categories(["goals", "intimacy"])

        assert result.ok
        gateway.update_check_in_categories.assert_awaited_once_with(active.session.id, ["goals", "intimacy"])
        assert active.session.selected_categories == ["goals", "intimacy"]
        assert set(active.session.category_progress) == {"goals", "intimacy"}

    @pytest.mark.asyncio
    async def test_select_categories_locked_after_discussion(self, active, gateway):
        active.go_to_step("category-discussion")

        result = await active.select_categories(["intimacy"])

        assert isinstance(result.error, CheckInValidationError)
        gateway.update_check_in_categories.assert_not_called()

    @pytest.mark.asyncio
    async def test_select_categories_failure_keeps_state(self, active, gateway):
        gateway.update_check_in_categories.side_effect = None
        gateway.update_check_in_categories.return_value = failure()

        await active.select_categories(["intimacy"])

        assert active.session.selected_categories == ["communication", "goals"]

    @pytest.mark.asyncio
    async def test_select_categories_without_session(self, store):
        result = await store.select_categories(["goals"])

        assert isinstance(result.error, NoActiveCheckInError)

    @pytest.mark.asyncio
    async def test_update_progress(self, active):
        assert active.update_category_progress("communication", is_completed=True, time_spent=120)

        progress = active.session.category_progress["communication"]
        assert progress.is_completed is True
        assert progress.time_spent == 120
        assert active.current_category_progress().category_id == "goals"

    @pytest.mark.asyncio
    async def test_update_progress_unknown_category(self, active):
        assert active.update_category_progress("finances", is_completed=True) is False
        assert "finances" not in active.session.category_progress

    @pytest.mark.asyncio
    async def test_all_categories_done(self, active):
        active.update_category_progress("communication", is_completed=True)
        active.update_category_progress("goals", is_completed=True)

        assert active.current_category_progress() is None


class TestDraftNotes:
    """Test write-through note operations."""

    @pytest.mark.asyncio
    async def test_add_appends_server_note(self, active, gateway):
        result = await active.add_draft_note("We should plan more", tags=["plans"])

        assert result.ok
        assert [n.id for n in active.session.draft_notes] == [result.data.id]
        kwargs = gateway.insert_note.call_args.kwargs
        assert kwargs["author_id"] == USER_ID
        assert kwargs["check_in_id"] == active.session.id

    @pytest.mark.asyncio
    async def test_add_failure_leaves_notes(self, active, gateway):
        gateway.insert_note.side_effect = None
        gateway.insert_note.return_value = failure("insert_note")

        result = await active.add_draft_note("lost")

        assert not result.ok
        assert active.session.draft_notes == []

    @pytest.mark.asyncio
    async def test_add_without_session(self, store, gateway):
        result = await store.add_draft_note("nobody home")

        assert isinstance(result.error, NoActiveCheckInError)
        gateway.insert_note.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_replaces_by_id(self, active, gateway):
        note = (await active.add_draft_note("first")).data
        gateway.update_note.return_value = GatewayResult(data=note.model_copy(update={"content": "second"}))

        await active.update_draft_note(note.id, content="second")

        gateway.update_note.assert_awaited_once_with(note.id, COUPLE_ID, {"content": "second"})
        assert [n.content for n in active.session.draft_notes] == ["second"]

    @pytest.mark.asyncio
    async def test_remove(self, active, gateway):
        keep = (await active.add_draft_note("keep")).data
        drop = (await active.add_draft_note("drop")).data

        result = await active.remove_draft_note(drop.id)

        assert result.ok
        gateway.delete_note.assert_awaited_once_with(drop.id, COUPLE_ID)
        assert [n.id for n in active.session.draft_notes] == [keep.id]

    @pytest.mark.asyncio
    async def test_remove_failure_keeps_note(self, active, gateway):
        note = (await active.add_draft_note("stay")).data
        gateway.delete_note.return_value = failure("delete_note")

        await active.remove_draft_note(note.id)

        assert len(active.session.draft_notes) == 1

    @pytest.mark.asyncio
    async def test_unknown_note_rejected(self, active, gateway):
        stranger = uuid.uuid4()

        updated = await active.update_draft_note(stranger, content="hijack")
        removed = await active.remove_draft_note(stranger)

        assert isinstance(updated.error, RecordNotFoundError)
        assert isinstance(removed.error, RecordNotFoundError)
        gateway.update_note.assert_not_called()
        gateway.delete_note.assert_not_called()

    @pytest.mark.asyncio
    async def test_required_fields_cannot_be_cleared(self, active, gateway):
        note = (await active.add_draft_note("keep me")).data

        result = await active.update_draft_note(note.id, content=None)

        assert isinstance(result.error, CheckInValidationError)
        gateway.update_note.assert_not_called()


class TestActionItems:
    """Test write-through action item operations."""

    @pytest.mark.asyncio
    async def test_add(self, active):
        result = await active.add_action_item("  Book a weekend away ")

        assert result.data.title == "Book a weekend away"
        assert active.session.action_items == [result.data]

    @pytest.mark.asyncio
    async def test_blank_title_rejected(self, active, gateway):
        result = await active.add_action_item("   ")

        assert isinstance(result.error, CheckInValidationError)
        gateway.insert_action_item.assert_not_called()

    @pytest.mark.asyncio
    async def test_toggle_uses_current_state(self, active, gateway):
        item = (await active.add_action_item("Walk")).data
        gateway.toggle_action_item.return_value = GatewayResult(data=item.model_copy(update={"completed": True}))

        await active.toggle_action_item(item.id)

        gateway.toggle_action_item.assert_awaited_once_with(item.id, COUPLE_ID, False)
        assert active.session.action_items[0].completed is True

    @pytest.mark.asyncio
    async def test_toggle_unknown_item(self, active, gateway):
        result = await active.toggle_action_item(uuid.uuid4())

        assert isinstance(result.error, CheckInValidationError)
        gateway.toggle_action_item.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_and_remove(self, active, gateway):
        item = (await active.add_action_item("Walk")).data
        gateway.update_action_item.return_value = GatewayResult(data=item.model_copy(update={"title": "Run"}))

        await active.update_action_item(item.id, title="Run")
        assert active.session.action_items[0].title == "Run"

        await active.remove_action_item(item.id)
        assert active.session.action_items == []

    @pytest.mark.asyncio
    async def test_unknown_item_rejected(self, active, gateway):
        stranger = uuid.uuid4()

        updated = await active.update_action_item(stranger, title="hijack")
        removed = await active.remove_action_item(stranger)

        assert isinstance(updated.error, RecordNotFoundError)
        assert isinstance(removed.error, RecordNotFoundError)
        gateway.update_action_item.assert_not_called()
        gateway.delete_action_item.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_title_must_not_be_blank(self, active, gateway):
        item = (await active.add_action_item("Walk")).data

        cleared = await active.update_action_item(item.id, title=None)
        blank = await active.update_action_item(item.id, title="  ")

        assert isinstance(cleared.error, CheckInValidationError)
        assert isinstance(blank.error, CheckInValidationError)
        gateway.update_action_item.assert_not_called()


class TestRestore:
    """Test restoring an in-progress check-in."""

    @pytest.mark.asyncio
    async def test_restores_at_discussion(self, store, gateway):
        record = make_record(categories=["goals"])
        note = make_note(record.id)
        item = make_action_item(record.id)
        gateway.fetch_active_check_in.return_value = GatewayResult(data=record)
        gateway.fetch_check_in_items.return_value = GatewayResult(data=([note], [item]))

        await store.open()

        assert store.session.id == record.id
        assert store.session.current_step == "category-discussion"
        assert store.session.completed_steps == ["warm-up", "category-selection"]
        assert store.session.draft_notes == [note]
        assert store.session.action_items == [item]
        assert store.is_loading is False

    @pytest.mark.asyncio
    async def test_fetch_error_keeps_error(self, store, gateway):
        gateway.fetch_active_check_in.return_value = failure("fetch_active_check_in")

        await store.open()

        assert store.session is None
        assert isinstance(store.error, PersistenceError)

    @pytest.mark.asyncio
    async def test_items_error_still_restores(self, store, gateway):
        gateway.fetch_active_check_in.return_value = GatewayResult(data=make_record())
        gateway.fetch_check_in_items.return_value = failure()

        await store.open()

        assert store.session is not None
        assert store.session.draft_notes == []


class TestListeners:
    @pytest.mark.asyncio
    async def test_notified_and_removable(self, store):
        listener = Mock()
        remove = store.add_listener(listener)

        await store.start_check_in(["goals"])
        assert listener.call_args.args[0] is store.session

        remove()
        store.complete_step("warm-up")
        assert listener.call_count == 1

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_store(self, store):
        store.add_listener(Mock(side_effect=RuntimeError("ui gone")))

        result = await store.start_check_in(["goals"])

        assert result.ok


class TestRemoteReconciliation:
    """Test applying partner changes from the change feed."""

    @pytest.fixture
    def feed(self):
        return InMemoryChangeFeed()

    @pytest.fixture
    async def live(self, gateway, feed):
        store = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gateway, feed=feed)
        await store.open()
        await store.start_check_in(["communication"])
        yield store
        await store.close()

    def publish(self, feed, type_, table, model):
        row = model.model_dump(mode="json")
        if type_ == "DELETE":
            feed.publish(ChangeEvent(type_, table, old_record=row))
        else:
            feed.publish(ChangeEvent(type_, table, record=row))

    @pytest.mark.asyncio
    async def test_open_subscribes_three_tables(self, live, feed):
        for table in ("check_ins", "notes", "action_items"):
            assert feed.subscriber_count(table, COUPLE_ID) == 1

    @pytest.mark.asyncio
    async def test_close_unsubscribes(self, live, feed):
        await live.close()

        assert feed.subscriber_count("notes", COUPLE_ID) == 0

    @pytest.mark.asyncio
    async def test_partner_note_appended_once(self, live, feed):
        note = make_note(live.session.id, author_id=PARTNER_ID)

        self.publish(feed, "INSERT", "notes", note)
        self.publish(feed, "INSERT", "notes", note)

        assert [n.id for n in live.session.draft_notes] == [note.id]

    @pytest.mark.asyncio
    async def test_own_write_echo_is_idempotent(self, live, feed):
        note = (await live.add_draft_note("mine")).data

        self.publish(feed, "INSERT", "notes", note)

        assert len(live.session.draft_notes) == 1

    @pytest.mark.asyncio
    async def test_note_update_and_delete(self, live, feed):
        note = make_note(live.session.id, author_id=PARTNER_ID)
        self.publish(feed, "INSERT", "notes", note)

        self.publish(feed, "UPDATE", "notes", note.model_copy(update={"content": "edited"}))
        assert live.session.draft_notes[0].content == "edited"

        self.publish(feed, "DELETE", "notes", note)
        assert live.session.draft_notes == []

    @pytest.mark.asyncio
    async def test_other_check_in_notes_ignored(self, live, feed):
        self.publish(feed, "INSERT", "notes", make_note(uuid.uuid4()))

        assert live.session.draft_notes == []

    @pytest.mark.asyncio
    async def test_partner_action_item_toggle(self, live, feed):
        item = make_action_item(live.session.id)
        self.publish(feed, "INSERT", "action_items", item)
        self.publish(feed, "UPDATE", "action_items", item.model_copy(update={"completed": True}))

        assert [a.completed for a in live.session.action_items] == [True]

    @pytest.mark.asyncio
    async def test_terminal_update_clears_session(self, live, feed):
        self.publish(feed, "UPDATE", "check_ins", make_record(live.session.id, status="completed"))

        assert live.session is None

    @pytest.mark.asyncio
    async def test_last_write_wins_on_row_update(self, live, feed):
        live.complete_step("warm-up")
        remote = make_record(live.session.id, categories=["goals", "intimacy"], mood_before=2, reflection="later")

        self.publish(feed, "UPDATE", "check_ins", remote)

        assert live.session.selected_categories == ["goals", "intimacy"]
        assert live.session.mood_before == 2
        assert live.session.reflection == "later"
        assert set(live.session.category_progress) == {"goals", "intimacy"}
        # per-client navigation survives a row update
        assert live.session.current_step == "category-selection"

    @pytest.mark.asyncio
    async def test_update_for_other_check_in_ignored(self, live, feed):
        self.publish(feed, "UPDATE", "check_ins", make_record(status="abandoned"))

        assert live.session is not None

    @pytest.mark.asyncio
    async def test_malformed_row_ignored(self, live, feed):
        feed.publish(ChangeEvent("INSERT", "notes", record={"couple_id": str(COUPLE_ID), "content": 5}))

        assert live.session.draft_notes == []

    @pytest.mark.asyncio
    async def test_partner_start_adopted(self, gateway, feed):
        store = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gateway, feed=feed)
        await store.open()
        record = make_record(categories=["goals"])

        self.publish(feed, "INSERT", "check_ins", record)

        assert store.session.id == record.id
        assert store.session.current_step == "warm-up"
        await store.close()

    @pytest.mark.asyncio
    async def test_resubscribe_after_dropped_feed(self, live, feed, gateway):
        check_in_id = live.session.id
        live.complete_step("warm-up")
        feed._handlers.clear()  # connection lost: the transport forgot every listener
        missed = make_note(check_in_id, author_id=PARTNER_ID, content="sent while offline")
        gateway.fetch_active_check_in.return_value = GatewayResult(data=make_record(check_in_id))
        gateway.fetch_check_in_items.return_value = GatewayResult(data=([missed], []))

        await live.resubscribe()

        for table in ("check_ins", "notes", "action_items"):
            assert feed.subscriber_count(table, COUPLE_ID) == 1
        assert [n.content for n in live.session.draft_notes] == ["sent while offline"]
        assert live.session.current_step == "category-selection"

        self.publish(feed, "INSERT", "notes", make_note(check_in_id, author_id=PARTNER_ID, content="live again"))
        assert len(live.session.draft_notes) == 2

    @pytest.mark.asyncio
    async def test_resync_clears_check_in_finished_while_offline(self, live, gateway):
        gateway.fetch_active_check_in.return_value = GatewayResult(data=None)

        await live.resubscribe()

        assert live.session is None
        assert live.is_subscribed


class TestTwoPartners:
    """Two stores sharing one database and the in-memory feed converge."""

    @pytest.mark.asyncio
    async def test_partners_converge(self, session_factory):
        feed = InMemoryChangeFeed()
        gw = PersistenceGateway(session_factory, publisher=feed)
        me = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gw, feed=feed)
        partner = CheckInStore(couple_id=COUPLE_ID, user_id=PARTNER_ID, gateway=gw, feed=feed)
        await me.open()
        await partner.open()

        await me.start_check_in(["communication", "goals"])
        assert partner.session.id == me.session.id

        note = (await partner.add_draft_note("I felt heard")).data
        item = (await me.add_action_item("Weekly walk")).data
        await partner.toggle_action_item(item.id)

        assert [n.id for n in me.session.draft_notes] == [note.id]
        assert [n.id for n in partner.session.draft_notes] == [note.id]
        assert me.session.action_items[0].completed is True

        await me.remove_draft_note(note.id)
        assert partner.session.draft_notes == []

        await partner.complete_check_in(mood_after=5)
        assert me.session is None
        assert partner.session is None

        await me.close()
        await partner.close()

    @pytest.mark.asyncio
    async def test_reopen_restores(self, session_factory):
        gw = PersistenceGateway(session_factory)
        first = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gw)
        await first.start_check_in(["goals"])
        await first.add_draft_note("carry over")

        second = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gw)
        await second.open()

        assert second.session.id == first.session.id
        assert [n.content for n in second.session.draft_notes] == ["carry over"]
        assert second.session.current_step == "category-discussion"

    @pytest.mark.asyncio
    async def test_other_couple_cannot_touch_rows(self, session_factory):
        gw = PersistenceGateway(session_factory)
        ours = CheckInStore(couple_id=COUPLE_ID, user_id=USER_ID, gateway=gw)
        theirs = CheckInStore(couple_id=uuid.uuid4(), user_id=uuid.uuid4(), gateway=gw)
        await ours.start_check_in(["goals"])
        await theirs.start_check_in(["goals"])
        note = (await ours.add_draft_note("ours")).data
        item = (await ours.add_action_item("Ours too")).data

        updated = await theirs.update_draft_note(note.id, content="overwritten")
        removed = await theirs.remove_action_item(item.id)

        assert isinstance(updated.error, RecordNotFoundError)
        assert isinstance(removed.error, RecordNotFoundError)
        notes, items = (await gw.fetch_check_in_items(ours.session.id, COUPLE_ID)).data
        assert [n.content for n in notes] == ["ours"]
        assert [a.id for a in items] == [item.id]
