import asyncio
import json
import unittest
import uuid
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.core.config import settings
from app.core.permissions import ALL_PERMISSIONS, Permission
from app.core.security import create_access_token
from app.main import app
from app.api.v1.ws.support import WS_CLOSE_TRY_AGAIN_LATER, WebSocketConnection
from app.schemas.events import ErrorData, ErrorEvent
from app.schemas.identity import GuestIdentity

WS_PATH = f"{settings.API_V1_STR}/ws/support"


def receive_until(ws, event: str, limit: int = 25) -> dict:
    """Skip frames until `event` arrives."""
    for _ in range(limit):
        frame = ws.receive_json()
        if frame["event"] == event:
            return frame
    raise AssertionError(f"{event} not received")


def operator_token(operator_id: str, permissions=ALL_PERMISSIONS) -> str:
    return create_access_token(operator_id, "operator", role="ADMIN", permissions=permissions)


class TestSupportSocket(unittest.TestCase):

    def setUp(self):
        self._client = TestClient(app)
        self.client = self._client.__enter__()

    def tearDown(self):
        self._client.__exit__(None, None, None)

    def test_guest_without_credentials_gets_a_token(self):
        with self.client.websocket_connect(WS_PATH) as ws:
            ok = ws.receive_json()
        self.assertEqual(ok["event"], "connect:ok")
        self.assertEqual(ok["data"]["kind"], "guest")
        self.assertTrue(ok["data"]["minted_guest_token"])
        self.assertTrue(ok["data"]["guest_token"].startswith("guest_"))

    def test_invalid_bearer_is_rejected_and_closed(self):
        with self.client.websocket_connect(f"{WS_PATH}?token=not-a-jwt") as ws:
            error = ws.receive_json()
            self.assertEqual(error["event"], "connect:error")
            self.assertEqual(error["data"]["code"], "AUTHENTICATION_FAILED")
            with self.assertRaises(WebSocketDisconnect) as ctx:
                ws.receive_json()
        self.assertEqual(ctx.exception.code, 4401)

    def test_account_via_authorization_header(self):
        account_id = f"account-{uuid.uuid4().hex[:8]}"
        token = create_access_token(account_id, "account")
        with self.client.websocket_connect(WS_PATH, headers={"Authorization": f"Bearer {token}"}) as ws:
            ok = ws.receive_json()
        self.assertEqual(ok["data"]["kind"], "account")
        self.assertEqual(ok["data"]["id"], account_id)

    def test_guest_to_operator_round_trip(self):
        operator_id = f"op-{uuid.uuid4().hex[:8]}"
        with self.client.websocket_connect(f"{WS_PATH}?token={operator_token(operator_id)}") as op_ws, \
                self.client.websocket_connect(WS_PATH) as guest_ws:
            self.assertEqual(op_ws.receive_json()["data"]["kind"], "operator")
            guest_token = guest_ws.receive_json()["data"]["guest_token"]

            guest_ws.send_json({"event": "message:send", "data": {"body": "hello"}})
            received = receive_until(guest_ws, "message:received")["data"]
            self.assertEqual(received["body"], "hello")
            self.assertEqual(received["sender_kind"], "guest")
            self.assertEqual(received["sender_ref"], guest_token)
            conversation_id = received["conversation_id"]

            activity = receive_until(op_ws, "conversation:new_activity")["data"]
            self.assertEqual(activity["conversation_id"], conversation_id)
            self.assertEqual(activity["preview"], "hello")

            op_ws.send_json({"event": "conversation:join", "data": {"conversation_id": conversation_id}})
            receive_until(op_ws, "conversation:joined")

            op_ws.send_json({"event": "message:read", "data": {"message_id": received["id"]}})
            read = receive_until(guest_ws, "message:read")["data"]
            self.assertEqual(read["message_id"], received["id"])

            op_ws.send_json({"event": "typing:start", "data": {"conversation_id": conversation_id}})
            typing = receive_until(guest_ws, "typing:start")["data"]
            self.assertEqual(typing["sender_kind"], "operator")

            op_ws.send_json({
                "event": "message:send",
                "data": {"conversation_id": conversation_id, "body": "hi, how can I help?"},
            })
            reply = receive_until(guest_ws, "message:received")["data"]
            self.assertEqual(reply["sender_kind"], "operator")
            unread = receive_until(guest_ws, "unread_count")["data"]
            self.assertEqual(unread, {
                "conversation_id": conversation_id,
                "count": 1,
                "viewer_kind": "guest",
                "total_unread_count": None,
            })

    def test_returning_guest_rejoins_open_conversation(self):
        with self.client.websocket_connect(WS_PATH) as first:
            guest_token = first.receive_json()["data"]["guest_token"]
            first.send_json({"event": "message:send", "data": {"body": "first visit"}})
            conversation_id = receive_until(first, "message:received")["data"]["conversation_id"]

        operator_id = f"op-{uuid.uuid4().hex[:8]}"
        with self.client.websocket_connect(f"{WS_PATH}?guest_token={guest_token}") as returning, \
                self.client.websocket_connect(f"{WS_PATH}?token={operator_token(operator_id)}") as op_ws:
            ok = returning.receive_json()
            self.assertFalse(ok["data"]["minted_guest_token"])
            self.assertEqual(ok["data"]["guest_token"], guest_token)
            op_ws.receive_json()

            op_ws.send_json({
                "event": "message:send",
                "data": {"conversation_id": conversation_id, "body": "welcome back"},
            })
            self.assertEqual(receive_until(returning, "message:received")["data"]["body"], "welcome back")

    def test_bad_frames_do_not_close_the_socket(self):
        with self.client.websocket_connect(WS_PATH) as ws:
            ws.receive_json()

            ws.send_text("{not json")
            error = receive_until(ws, "error")["data"]
            self.assertEqual(error["code"], "VALIDATION_FAILED")

            ws.send_json({"event": "conversation:explode", "data": {}})
            self.assertEqual(receive_until(ws, "error")["data"]["code"], "VALIDATION_FAILED")

            ws.send_json({"event": "conversation:join", "data": {"conversation_id": "does-not-exist"}})
            error = receive_until(ws, "error")["data"]
            self.assertEqual(error["code"], "NOT_FOUND")
            self.assertEqual(error["request_event"], "conversation:join")

            ws.send_json({"event": "message:send", "data": {"body": "still here"}})
            self.assertEqual(receive_until(ws, "message:received")["data"]["body"], "still here")

    def test_operator_without_reply_permission(self):
        with self.client.websocket_connect(WS_PATH) as guest_ws:
            guest_ws.receive_json()
            guest_ws.send_json({"event": "message:send", "data": {"body": "help"}})
            conversation_id = receive_until(guest_ws, "message:received")["data"]["conversation_id"]

        token = operator_token("op-readonly", permissions=[Permission.SUPPORT_VIEW.value])
        with self.client.websocket_connect(f"{WS_PATH}?token={token}") as op_ws:
            op_ws.receive_json()
            op_ws.send_json({
                "event": "message:send",
                "data": {"conversation_id": conversation_id, "body": "hi"},
            })
            self.assertEqual(receive_until(op_ws, "error")["data"]["code"], "PERMISSION_DENIED")


    def test_send_is_acknowledged_without_joining_the_room(self):
        with self.client.websocket_connect(WS_PATH) as guest_ws:
            guest_ws.receive_json()
            guest_ws.send_json({"event": "message:send", "data": {"body": "help"}})
            sent = receive_until(guest_ws, "message:sent")["data"]
            self.assertEqual(sent["body"], "help")
            conversation_id = sent["conversation_id"]

            operator_id = f"op-{uuid.uuid4().hex[:8]}"
            with self.client.websocket_connect(f"{WS_PATH}?token={operator_token(operator_id)}") as op_ws:
                op_ws.receive_json()
                op_ws.send_json({
                    "event": "message:send",
                    "data": {"conversation_id": conversation_id, "body": "on it"},
                })
                ack = receive_until(op_ws, "message:sent")["data"]
                self.assertEqual(ack["conversation_id"], conversation_id)
                self.assertEqual(ack["sender_ref"], operator_id)
                self.assertEqual(ack["body"], "on it")

            reply = receive_until(guest_ws, "message:received")["data"]
            self.assertEqual(reply["id"], ack["id"])

class TestWebSocketConnection(unittest.IsolatedAsyncioTestCase):

    @staticmethod
    def _event(n: int) -> ErrorEvent:
        return ErrorEvent(data=ErrorData(code="TEST", message=f"frame {n}"))

    async def test_writer_sends_in_order_and_flushes_on_stop(self):
        websocket = AsyncMock()
        connection = WebSocketConnection(websocket, GuestIdentity(token="guest_1_abc"), queue_size=10)
        connection.start()
        for n in range(3):
            self.assertTrue(connection.deliver(self._event(n)))
        await connection.stop()

        sent = [json.loads(call.args[0])["data"]["message"] for call in websocket.send_text.await_args_list]
        self.assertEqual(sent, ["frame 0", "frame 1", "frame 2"])
        self.assertFalse(connection.deliver(self._event(3)))

    async def test_overflow_closes_the_connection(self):
        websocket = AsyncMock()
        connection = WebSocketConnection(websocket, GuestIdentity(token="guest_1_abc"), queue_size=2)

        self.assertTrue(connection.deliver(self._event(0)))
        self.assertTrue(connection.deliver(self._event(1)))
        self.assertFalse(connection.deliver(self._event(2)))
        self.assertTrue(connection.closed)

        await asyncio.sleep(0)
        await asyncio.sleep(0)
        websocket.close.assert_awaited_once_with(code=WS_CLOSE_TRY_AGAIN_LATER)


if __name__ == "__main__":
    unittest.main()
