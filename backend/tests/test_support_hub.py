import asyncio
import json
import tempfile
import unittest

import httpx

from app.core.exceptions import InvalidState, NotFound, PermissionDenied, ValidationFailed
from app.core.permissions import Permission
from app.models.support_conversation import ConversationPriority, ConversationStatus, ConversationTopic
from app.models.support_message import MessageKind, SenderKind
from app.schemas.identity import Resolution
from app.services.operator_directory import OperatorDirectory
from app.services.storage_service import StorageService
from app.services.support_hub import ATTACHMENT_CAPTION, SupportHub
from app.services.unread_counter import ViewerKind

from support_fixtures import DatabaseTestCase, FakeConnection, account, guest, operator

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class HubTestCase(DatabaseTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        self.upload_dir = tempfile.mkdtemp(prefix="hub-uploads-")
        self.hub = SupportHub(
            self.session_factory,
            clock=self.clock,
            storage=StorageService(self.upload_dir, "http://files.test"),
        )

    async def connect(self, identity, minted: bool = False) -> FakeConnection:
        connection = FakeConnection(identity)
        await self.hub.attach(connection, Resolution(identity=identity, minted_guest_token=minted))
        return connection


class TestSupportHub(HubTestCase):

    async def test_attach_sends_connect_ok_first(self):
        visitor = guest()
        connection = await self.connect(visitor, minted=True)
        ok = connection.events[0]
        self.assertEqual(ok.event, "connect:ok")
        self.assertEqual(ok.data.kind, "guest")
        self.assertEqual(ok.data.guest_token, visitor.token)
        self.assertTrue(ok.data.minted_guest_token)

    async def test_guest_chat_reaches_operator(self):
        """Guest writes, operator reads, guest sees 0 until the reply, then 1."""
        visitor = guest()
        op = operator("opA")
        guest_conn = await self.connect(visitor)
        op_conn = await self.connect(op)

        message = await self.hub.send_message(visitor, "hello")
        conversation_id = message.conversation_id

        activity = op_conn.named("conversation:new_activity")
        self.assertEqual(len(activity), 1)
        self.assertEqual(activity[0].data.conversation_id, conversation_id)
        self.assertEqual(activity[0].data.preview, "hello")
        self.assertTrue(activity[0].data.new_conversation)

        # The guest's own socket was put in the new room
        self.assertEqual([e.data.body for e in guest_conn.named("message:received")], ["hello"])

        await self.hub.join(op_conn, conversation_id)
        await self.hub.mark_read(op, message.id)
        self.assertEqual(await self.hub.unread.count(conversation_id, ViewerKind.GUEST), 0)
        self.assertEqual(await self.hub.unread.count(conversation_id, ViewerKind.OPERATOR), 0)

        await self.hub.send_message(op, "hi, how can I help?", conversation_id=conversation_id)
        self.assertEqual(await self.hub.unread.count(conversation_id, ViewerKind.GUEST), 1)

        counts = [e.data for e in guest_conn.named("unread_count") if e.data.viewer_kind == "guest"]
        self.assertEqual(counts[-1].count, 1)

    async def test_delivery_order_matches_append_order(self):
        owner = account()
        subscriber = await self.connect(owner)
        first = await self.hub.send_message(owner, "S1")

        await asyncio.gather(*[
            self.hub.send_message(owner, body, conversation_id=first.conversation_id)
            for body in ("S2", "S3", "S4", "S5")
        ])
        received = [e.data for e in subscriber.named("message:received")]
        stored, _ = await self.hub.messages.list_messages(first.conversation_id)
        self.assertEqual([m.id for m in received], [m.id for m in stored])
        self.assertEqual(received[0].body, "S1")

    async def test_staff_events_only_reach_viewers(self):
        viewer = await self.connect(operator("opA"))
        outsider = await self.connect(operator("opB", permissions=[Permission.SUPPORT_REPLY.value]))
        other_guest = await self.connect(guest())

        await self.hub.send_message(account(), "hello")

        self.assertEqual(len(viewer.named("conversation:new_activity")), 1)
        self.assertEqual(outsider.named("conversation:new_activity"), [])
        self.assertEqual(other_guest.named("conversation:new_activity"), [])

        totals = [e.data.total_unread_count for e in viewer.named("unread_count")]
        self.assertEqual(totals, [1])

    async def test_typing_is_not_echoed(self):
        owner = account()
        phone = await self.connect(owner)
        message = await self.hub.send_message(owner, "hello")
        op_conn = await self.connect(operator())
        await self.hub.join(op_conn, message.conversation_id)

        await self.hub.typing(op_conn, message.conversation_id, started=True)
        await self.hub.typing(op_conn, message.conversation_id, started=False)
        self.assertEqual([e.event for e in phone.events if e.event.startswith("typing")], ["typing:start", "typing:stop"])
        self.assertEqual([e for e in op_conn.events if e.event.startswith("typing")], [])

    async def test_participants_cannot_touch_foreign_conversations(self):
        message = await self.hub.send_message(account(), "mine")
        intruder = account("account-99")
        intruder_conn = await self.connect(intruder)

        with self.assertRaises(NotFound):
            await self.hub.join(intruder_conn, message.conversation_id)
        with self.assertRaises(NotFound):
            await self.hub.send_message(intruder, "hi", conversation_id=message.conversation_id)
        with self.assertRaises(NotFound):
            await self.hub.mark_read(intruder, message.id)
        with self.assertRaises(NotFound):
            await self.hub.typing(intruder_conn, message.conversation_id, started=True)

    async def test_sender_cannot_mark_own_message_read(self):
        owner = account()
        message = await self.hub.send_message(owner, "hello")
        with self.assertRaises(InvalidState):
            await self.hub.mark_read(owner, message.id)

    async def test_operator_cannot_mark_system_notice_read(self):
        visitor = guest()
        first = await self.hub.send_message(visitor, "hello")
        conversation_id = first.conversation_id
        appended = await self.hub.messages.append(
            conversation_id, SenderKind.SYSTEM, None, "Our team is away", MessageKind.SYSTEM
        )

        with self.assertRaises(InvalidState):
            await self.hub.mark_read(operator(), appended.message.id)
        self.assertEqual(await self.hub.unread.count(conversation_id, ViewerKind.GUEST), 1)

        await self.hub.mark_read(visitor, appended.message.id)
        self.assertEqual(await self.hub.unread.count(conversation_id, ViewerKind.GUEST), 0)

    async def test_participant_message_to_closed_conversation_starts_a_new_one(self):
        owner = account()
        phone = await self.connect(owner)
        first = await self.hub.send_message(owner, "hello", topic=ConversationTopic.ONBOARDING)
        await self.hub.set_status(operator(), first.conversation_id, ConversationStatus.RESOLVED)

        follow_up = await self.hub.send_message(owner, "one more thing", conversation_id=first.conversation_id)
        self.assertNotEqual(follow_up.conversation_id, first.conversation_id)
        fresh = await self.hub.conversations.get(follow_up.conversation_id)
        self.assertEqual(fresh.topic, ConversationTopic.ONBOARDING.value)
        self.assertIn("one more thing", [e.data.body for e in phone.named("message:received")])

    async def test_operator_message_to_closed_conversation_is_rejected(self):
        message = await self.hub.send_message(account(), "hello")
        await self.hub.set_status(operator(), message.conversation_id, ConversationStatus.CLOSED)
        with self.assertRaises(InvalidState):
            await self.hub.send_message(operator(), "late reply", conversation_id=message.conversation_id)

    async def test_operator_permissions(self):
        message = await self.hub.send_message(account(), "hello")
        viewer = operator("opV", permissions=[Permission.SUPPORT_VIEW.value])

        with self.assertRaises(PermissionDenied):
            await self.hub.send_message(viewer, "hi", conversation_id=message.conversation_id)
        with self.assertRaises(PermissionDenied):
            await self.hub.set_status(viewer, message.conversation_id, ConversationStatus.CLOSED)
        with self.assertRaises(PermissionDenied):
            await self.hub.issue_code(viewer)
        with self.assertRaises(ValidationFailed):
            await self.hub.send_message(operator(), "where?")

    async def test_participants_cannot_send_privileged_kinds(self):
        with self.assertRaises(ValidationFailed):
            await self.hub.send_message(guest(), "123456", kind=MessageKind.AUTH_CODE)

    async def test_status_change_is_announced(self):
        owner = account()
        phone = await self.connect(owner)
        pool = await self.connect(operator("opA"))
        message = await self.hub.send_message(owner, "hello")

        await self.hub.assign(operator("opA"), message.conversation_id)
        out = await self.hub.set_priority(operator("opA"), message.conversation_id, ConversationPriority.HIGH)
        self.assertEqual(out.operator_id, "opA")
        self.assertEqual(out.priority, ConversationPriority.HIGH)

        for connection in (phone, pool):
            updates = connection.named("conversation:updated")
            self.assertEqual(len(updates), 2)
            self.assertEqual(updates[-1].data.priority, ConversationPriority.HIGH)

    async def test_updates_reach_owner_devices_and_assignee(self):
        owner = account()
        phone = await self.connect(owner)
        message = await self.hub.send_message(owner, "hello")
        await self.hub.leave(phone, message.conversation_id)
        assignee = await self.connect(operator("opR", permissions=[Permission.SUPPORT_REPLY.value]))

        await self.hub.assign(operator("opA"), message.conversation_id, "opR")
        await self.hub.set_priority(operator("opA"), message.conversation_id, ConversationPriority.URGENT)

        for connection in (phone, assignee):
            updates = connection.named("conversation:updated")
            self.assertEqual(
                [u.data.priority for u in updates], [ConversationPriority.NORMAL, ConversationPriority.URGENT]
            )
            self.assertEqual({u.data.operator_id for u in updates}, {"opR"})

    async def test_code_handoff(self):
        """Bound code posted in-chat, verified once by the bound account only."""
        owner = account("account-42")
        phone = await self.connect(owner)
        message = await self.hub.send_message(owner, "I need a code", topic=ConversationTopic.ONBOARDING)
        conversation_id = message.conversation_id

        auth_code = await self.hub.issue_code(
            operator("opA"), account_id="account-42", conversation_id=conversation_id
        )
        posted = [e.data for e in phone.named("message:received") if e.data.kind == MessageKind.AUTH_CODE]
        self.assertEqual([m.body for m in posted], [auth_code.code])

        self.assertIsNone(await self.hub.verify_code(auth_code.code, account_id="account-99"))
        verified = await self.hub.verify_code(auth_code.code, account_id="account-42")
        self.assertIsNotNone(verified)
        self.assertEqual(verified.conversation_id, conversation_id)
        self.assertIsNone(await self.hub.verify_code(auth_code.code, account_id="account-42"))

    async def test_upload_and_send(self):
        owner = guest()
        phone = await self.connect(owner)
        first = await self.hub.send_message(owner, "hello")

        message = await self.hub.upload_and_send(owner, first.conversation_id, PNG, "receipt.PNG", "image/png")
        self.assertEqual(message.kind, MessageKind.FILE.value)
        self.assertEqual(message.body, ATTACHMENT_CAPTION)
        self.assertTrue(message.file_url.startswith("http://files.test/support-messages/"))
        self.assertEqual(message.file_size, len(PNG))
        self.assertEqual(phone.named("message:received")[-1].data.id, message.id)

        with self.assertRaises(ValidationFailed):
            await self.hub.upload_and_send(owner, first.conversation_id, b"MZ", "tool.exe", "application/x-msdownload")

    async def test_detach_is_idempotent(self):
        connection = await self.connect(account())
        self.assertIsNotNone(await self.hub.detach(connection.id))
        self.assertIsNone(await self.hub.detach(connection.id))


class TestOfflineOperatorPush(HubTestCase):

    async def test_push_goes_to_active_operators_without_a_socket(self):
        pushed = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json={"operators": [{"id": "opA"}, {"id": "opB"}]})
            pushed.append(request)
            return httpx.Response(202)

        directory = OperatorDirectory(
            "http://directory.test", "http://push.test/notify", transport=httpx.MockTransport(handler)
        )
        self.hub = SupportHub(self.session_factory, clock=self.clock, operator_directory=directory)
        await self.connect(operator("opA"))

        await self.hub.send_message(guest(), "anyone there?")
        await self.hub.shutdown()

        self.assertEqual(len(pushed), 1)
        body = json.loads(pushed[0].content)
        self.assertEqual(body["operator_ids"], ["opB"])
        self.assertEqual(body["notification"]["type"], "support.new_activity")

    async def test_directory_failure_does_not_break_chat(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        directory = OperatorDirectory(
            "http://directory.test", "http://push.test/notify", transport=httpx.MockTransport(handler)
        )
        self.hub = SupportHub(self.session_factory, clock=self.clock, operator_directory=directory)

        message = await self.hub.send_message(guest(), "hello")
        await self.hub.shutdown()
        self.assertEqual(message.body, "hello")


if __name__ == "__main__":
    unittest.main()
