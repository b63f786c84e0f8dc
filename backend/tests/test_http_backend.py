import asyncio

import httpx
import pytest

from booking_chat.api.auth import create_access_token
from booking_chat.client import ConversationSession, HttpChatBackend, UnreadCounter
from booking_chat.main import app
from booking_chat.models import BookingStatus
from booking_chat.utils.errors import (
    AccessDeniedError,
    ChatValidationError,
    DeliveryUnavailableError,
    ForbiddenError,
    InvalidTypeError,
    NotFoundError,
)


def _backend(user):
    return HttpChatBackend(
        "http://testserver",
        create_access_token({"sub": user.email}),
        user.id,
        transport=httpx.ASGITransport(app=app),
    )


async def eventually(check, timeout=2.0, interval=0.01):
    deadline = asyncio.get_running_loop().time() + timeout
    while not check():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def test_http_session_polls_and_converges(people, booking):
    customer = people["customer"]
    provider_user = people["provider_user"]

    async def run():
        sender = _backend(customer)
        reader = _backend(provider_user)
        viewer = ConversationSession(reader, booking.id, poll_interval=0.02)
        counter = UnreadCounter(_backend(provider_user), poll_interval=0.02)
        try:
            await viewer.open()
            assert viewer.polling
            # Reading happens through the session, so keep the badge elsewhere
            await viewer.set_viewport(False)
            await counter.start()
            assert counter.polling

            sent = await sender.append(booking.id, body="Can we start at 8?")
            assert sent.receiver_id == provider_user.id
            await eventually(lambda: [m.id for m in viewer.messages] == [sent.id])
            assert viewer.has_new_message_hint
            await eventually(lambda: counter.total == 1)

            await viewer.set_viewport(True)
            assert viewer.unread_count == 0
            await eventually(lambda: counter.total == 0)
            assert await reader.global_unread_count() == 0
        finally:
            await viewer.close()
            await counter.close()
            await counter.backend.aclose()
            await sender.aclose()
            await reader.aclose()

    asyncio.run(run())


def test_polling_sender_sees_messages_read(people, booking):
    customer = people["customer"]
    provider_user = people["provider_user"]

    async def run():
        reader = _backend(provider_user)
        session = ConversationSession(_backend(customer), booking.id, poll_interval=0.02)
        try:
            await session.open()
            assert session.polling
            session.draft = "hi"
            sent = await session.send()
            assert sent.is_read is False

            flipped = await reader.mark_read(booking.id)
            assert [m.id for m in flipped] == [sent.id]
            assert flipped[0].is_read is True

            await eventually(lambda: [m.is_read for m in session.messages] == [True])
            again = await reader.fetch_history(booking.id, ids=[sent.id])
            assert [m.id for m in again] == [sent.id]
        finally:
            await session.close()
            await session.backend.aclose()
            await reader.aclose()

    asyncio.run(run())


def test_http_errors_map_to_chat_errors(people, booking, make_booking):
    done = make_booking(BookingStatus.CANCELLED)

    async def run():
        customer = _backend(people["customer"])
        outsider = _backend(people["outsider"])
        try:
            with pytest.raises(AccessDeniedError):
                await outsider.resolve(booking.id)
            with pytest.raises(ForbiddenError):
                await outsider.append(booking.id, body="hi")
            with pytest.raises(NotFoundError):
                await customer.fetch_history(9999)
            with pytest.raises(ForbiddenError) as exc:
                await customer.append(done.id, body="too late")
            assert exc.value.field_errors == {"status": "cancelled"}
            with pytest.raises(InvalidTypeError):
                await customer.upload(booking.id, b"%PDF", "application/pdf", "a.pdf")
            with pytest.raises(ChatValidationError):
                await customer.append(booking.id, body="   ")
            with pytest.raises(DeliveryUnavailableError):
                await customer.subscribe(booking.id)
        finally:
            await customer.aclose()
            await outsider.aclose()

    asyncio.run(run())


def test_http_upload_and_send(people, booking):
    async def run():
        customer = _backend(people["customer"])
        try:
            stored = await customer.upload(booking.id, b"\xff\xd8\xffjpeg", "image/jpeg", "gig.jpg")
            msg = await customer.append(booking.id, attachment_url=stored.url, mime_hint=stored.content_type)
            history = await customer.fetch_history(booking.id)
            deleted = await customer.delete_conversation(booking.id)
            return stored, msg, history, deleted
        finally:
            await customer.aclose()

    stored, msg, history, deleted = asyncio.run(run())
    assert stored.url.endswith(".jpg")
    assert msg.is_attachment
    assert [m.body for m in history] == [stored.url]
    assert deleted == 1


def test_bad_token_is_access_denied(booking):
    async def run():
        backend = HttpChatBackend(
            "http://testserver", "garbage", 1, transport=httpx.ASGITransport(app=app)
        )
        try:
            await backend.resolve(booking.id)
        finally:
            await backend.aclose()

    with pytest.raises(AccessDeniedError):
        asyncio.run(run())
