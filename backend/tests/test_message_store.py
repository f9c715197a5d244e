import unittest
from datetime import timezone

from app.core.exceptions import InvalidState, NotFound, ValidationFailed
from app.models.support_conversation import ConversationStatus, ConversationTopic
from app.models.support_message import MessageKind, SenderKind
from app.schemas.support import FileRef
from app.services.conversation_manager import ConversationManager
from app.services.message_store import MAX_BODY_LENGTH, MessageStore
from app.services.unread_counter import UnreadCounter, ViewerKind, receiver_kind_for

from support_fixtures import DatabaseTestCase, guest


class TestMessageStore(DatabaseTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.unread = UnreadCounter(self.session_factory)
        self.manager = ConversationManager(self.session_factory, self.unread, self.clock)
        self.store = MessageStore(self.session_factory, self.unread, self.clock)
        self.guest = guest()
        self.conversation, _ = await self.manager.get_or_create_active(self.guest, ConversationTopic.GENERAL)

    async def _from_guest(self, body="hello"):
        result = await self.store.append(self.conversation.id, SenderKind.GUEST, self.guest.token, body)
        return result.message

    async def _from_operator(self, body="how can I help?"):
        result = await self.store.append(self.conversation.id, SenderKind.OPERATOR, "opA", body)
        return result.message

    async def test_append_stamps_server_time_in_utc(self):
        self.clock.advance(minutes=3)
        expected = self.clock.now
        result = await self.store.append(self.conversation.id, SenderKind.GUEST, self.guest.token, "  hello  ")

        self.assertEqual(result.message.body, "hello")
        self.assertEqual(result.message.created_at, expected)
        self.assertEqual(result.message.created_at.utcoffset(), timezone.utc.utcoffset(None))
        self.assertEqual(result.conversation.last_message_at, expected)
        self.assertFalse(result.message.is_read)

        stored = await self.store.get(result.message.id)
        self.assertEqual(stored.created_at, expected)

    async def test_append_to_missing_conversation(self):
        with self.assertRaises(NotFound):
            await self.store.append("missing", SenderKind.GUEST, self.guest.token, "hello")

    async def test_append_to_closed_conversation_is_rejected(self):
        await self.manager.set_status(self.conversation.id, ConversationStatus.CLOSED)
        with self.assertRaises(InvalidState):
            await self._from_guest()

    async def test_validation(self):
        cases = [
            dict(sender_kind=SenderKind.GUEST, sender_ref=self.guest.token, body="   "),
            dict(sender_kind=SenderKind.GUEST, sender_ref=self.guest.token, body="x" * (MAX_BODY_LENGTH + 1)),
            dict(sender_kind=SenderKind.GUEST, sender_ref=None, body="hi"),
            dict(sender_kind=SenderKind.SYSTEM, sender_ref="opA", body="hi", kind=MessageKind.SYSTEM),
            dict(sender_kind=SenderKind.GUEST, sender_ref=self.guest.token, body="hi", kind=MessageKind.SYSTEM),
            dict(sender_kind=SenderKind.GUEST, sender_ref=self.guest.token, body="123456", kind=MessageKind.AUTH_CODE),
            dict(sender_kind=SenderKind.GUEST, sender_ref=self.guest.token, body="pic", kind=MessageKind.FILE),
        ]
        for case in cases:
            with self.subTest(case=case), self.assertRaises(ValidationFailed):
                await self.store.append(self.conversation.id, **case)

    async def test_file_message_keeps_reference(self):
        ref = FileRef(key="support-messages/a.png", url="http://files/a.png", name="a.png", size=10)
        result = await self.store.append(
            self.conversation.id, SenderKind.GUEST, self.guest.token, "pic", MessageKind.FILE, ref
        )
        self.assertEqual(result.message.file_url, "http://files/a.png")
        self.assertEqual(result.message.file_name, "a.png")
        self.assertEqual(result.message.file_size, 10)

    async def test_unread_counts_each_side(self):
        await self._from_guest("one")
        await self._from_guest("two")
        await self._from_operator("reply")
        await self.store.append(
            self.conversation.id, SenderKind.SYSTEM, None, "Operator joined", MessageKind.SYSTEM
        )

        self.assertEqual(await self.unread.count(self.conversation.id, ViewerKind.OPERATOR), 2)
        self.assertEqual(await self.unread.count(self.conversation.id, ViewerKind.GUEST), 2)
        self.assertEqual(await self.unread.total_for_operators(), 2)

    async def test_mark_read_is_idempotent(self):
        message = await self._from_guest()
        await self._from_guest("second")

        first = await self.store.mark_read(message.id)
        self.assertTrue(first.changed)
        self.assertEqual(first.viewer_kind, ViewerKind.OPERATOR)
        self.assertEqual(first.unread_count, 1)
        read_at = first.message.read_at

        self.clock.advance(minutes=1)
        second = await self.store.mark_read(message.id)
        self.assertFalse(second.changed)
        self.assertEqual(second.unread_count, first.unread_count)
        self.assertEqual(second.message.read_at, read_at)
        self.assertTrue(second.message.is_read)

    async def test_unread_is_monotonic(self):
        ids = [(await self._from_guest(f"m{i}")).id for i in range(4)]
        previous = await self.unread.count(self.conversation.id, ViewerKind.OPERATOR)
        for message_id in ids:
            receipt = await self.store.mark_read(message_id)
            self.assertLessEqual(receipt.unread_count, previous)
            previous = receipt.unread_count
        self.assertEqual(previous, 0)

        # An operator reply does not touch the operator-side count
        await self._from_operator()
        self.assertEqual(await self.unread.count(self.conversation.id, ViewerKind.OPERATOR), 0)

    async def test_mark_read_missing_message(self):
        with self.assertRaises(NotFound):
            await self.store.mark_read("missing")

    async def test_list_messages_oldest_first(self):
        bodies = ["first", "second", "third", "fourth", "fifth"]
        for body in bodies:
            await self._from_guest(body)

        page, total = await self.store.list_messages(self.conversation.id, page=1, limit=3)
        self.assertEqual(total, 5)
        self.assertEqual([m.body for m in page], bodies[:3])

        page, _ = await self.store.list_messages(self.conversation.id, page=2, limit=3)
        self.assertEqual([m.body for m in page], bodies[3:])

    def test_receiver_kind(self):
        self.assertEqual(receiver_kind_for("guest", "guest"), ViewerKind.OPERATOR)
        self.assertEqual(receiver_kind_for("account", "account"), ViewerKind.OPERATOR)
        self.assertEqual(receiver_kind_for("operator", "account"), ViewerKind.ACCOUNT)
        self.assertEqual(receiver_kind_for("system", "guest"), ViewerKind.GUEST)


if __name__ == "__main__":
    unittest.main()
