import asyncio
import json
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from livechat.core.exceptions import StoreError
from livechat.models.chat import SenderType, utcnow
from livechat.schemas.chat_events import INBOUND_EVENT_TYPES
from livechat.services.chat_hub import ChatHub
from livechat.services.chat_protocol import (EVENT_ROUTES, AutoReply,
                                             ChatProtocolHandler)


def frame(event_type, **fields):
    return json.dumps({'type': event_type, **fields})


async def start_visitor(protocol, visitor, **fields):
    protocol.connect(visitor)
    await protocol.handle_frame(visitor, frame('visitor_start', **fields))
    return visitor.transport.last('session_started')['session']['id']


def test_every_inbound_event_has_a_handler():
    assert set(EVENT_ROUTES) == set(INBOUND_EVENT_TYPES)
    for _, method_name in EVENT_ROUTES.values():
        assert callable(getattr(ChatProtocolHandler, method_name))


@pytest.mark.asyncio
async def test_full_chat_scenario(chat_hub, store, make_visitor, make_admin):
    protocol = chat_hub.protocol
    admin = make_admin('Alice')
    protocol.connect(admin)
    visitor = make_visitor('v_1')

    session_id = await start_visitor(
        protocol, visitor, visitorName='Ann', visitorEmail='ann@test.com'
    )
    started = visitor.transport.last('session_started')
    assert started['messages'] == []
    assert started['session']['visitorName'] == 'Ann'
    assert started['session']['status'] == 'open'
    assert admin.transport.last('new_session')['session']['id'] == session_id

    await protocol.handle_frame(
        visitor, frame('visitor_message', message='  Hello  ')
    )
    echo = visitor.transport.last('message_sent')
    assert echo['sessionId'] == session_id
    assert echo['message']['message'] == 'Hello'
    assert echo['message']['senderType'] == 'visitor'
    assert echo['message']['senderName'] == 'Ann'
    incoming = admin.transport.last('new_message')
    assert incoming['message']['id'] == echo['message']['id']

    await protocol.handle_frame(
        admin,
        frame('admin_message', sessionId=session_id, message='Hi Ann'),
    )
    reply = admin.transport.last('message_sent')
    assert reply['message']['senderType'] == 'admin'
    assert reply['message']['senderName'] == 'Alice'
    delivered = visitor.transport.last('new_message')
    assert delivered['message']['id'] == reply['message']['id']
    # the replying admin gets only its own echo
    assert len(admin.transport.of_type('new_message')) == 1

    await protocol.handle_frame(
        admin, frame('close_session', sessionId=session_id)
    )
    assert visitor.transport.last('session_closed')['sessionId'] == session_id
    closed = admin.transport.last('session_closed')
    assert closed['session']['status'] == 'closed'

    before = len(visitor.transport.sent)
    await protocol.handle_frame(
        visitor, frame('visitor_message', message='anyone?')
    )
    assert len(visitor.transport.sent) == before
    assert await store.count_messages(session_id) == 2


@pytest.mark.asyncio
async def test_reconnect_resumes_session_with_history(
    chat_hub, make_visitor, make_admin
):
    protocol = chat_hub.protocol
    first_tab = make_visitor('v_1')
    session_id = await start_visitor(protocol, first_tab)
    await protocol.handle_frame(
        first_tab, frame('visitor_message', message='one')
    )

    second_tab = make_visitor('v_1')
    assert await start_visitor(protocol, second_tab) == session_id
    history = second_tab.transport.last('session_started')['messages']
    assert [m['message'] for m in history] == ['one']

    admin = make_admin()
    protocol.connect(admin)
    await protocol.handle_frame(
        admin, frame('admin_message', sessionId=session_id, message='back')
    )
    assert second_tab.transport.of_type('new_message')
    assert first_tab.transport.of_type('new_message') == []


@pytest.mark.asyncio
async def test_visitor_id_from_connection_when_missing_in_frame(
    chat_hub, make_visitor
):
    protocol = chat_hub.protocol
    visitor = make_visitor('v_query')
    session_id = await start_visitor(protocol, visitor)
    session = visitor.transport.last('session_started')['session']
    assert session['visitorId'] == 'v_query'
    assert chat_hub.registry.lookup_by_session(session_id) is visitor


@pytest.mark.asyncio
async def test_visitor_start_without_any_visitor_id_is_dropped(
    chat_hub, store, make_visitor
):
    visitor = make_visitor(visitor_id=None)
    chat_hub.protocol.connect(visitor)
    await chat_hub.protocol.handle_frame(visitor, frame('visitor_start'))
    assert visitor.transport.sent == []
    assert await store.list_sessions() == []


@pytest.mark.asyncio
async def test_every_admin_sees_visitor_message(
    chat_hub, make_visitor, make_admin, failing_transport
):
    protocol = chat_hub.protocol
    admins = [make_admin(f'admin {i}') for i in range(4)]
    broken = make_admin('broken', transport=failing_transport)
    for admin in [*admins, broken]:
        protocol.connect(admin)
    visitor = make_visitor()
    await start_visitor(protocol, visitor)

    await protocol.handle_frame(
        visitor, frame('visitor_message', message='hello all')
    )
    for admin in admins:
        assert len(admin.transport.of_type('new_message')) == 1
    assert broken not in chat_hub.registry.all_admins()
    assert len(visitor.transport.of_type('message_sent')) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    'raw',
    [
        'not json',
        '[]',
        frame('no_such_event'),
        frame('visitor_message'),
        frame('visitor_message', message='   '),
        frame('visitor_message', message='x' * 4001),
        b'\xff\xfe',
    ],
)
async def test_malformed_frames_are_dropped(
    chat_hub, store, make_visitor, make_admin, raw
):
    protocol = chat_hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor)
    sent_before = len(visitor.transport.sent), len(admin.transport.sent)

    await protocol.handle_frame(visitor, raw)

    assert (len(visitor.transport.sent), len(admin.transport.sent)) == (
        sent_before
    )
    assert await store.count_messages(session_id) == 0


@pytest.mark.asyncio
async def test_events_from_wrong_role_are_dropped(
    chat_hub, store, make_visitor, make_admin
):
    protocol = chat_hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor)

    await protocol.handle_frame(
        visitor,
        frame('admin_message', sessionId=session_id, message='fake admin'),
    )
    await protocol.handle_frame(
        visitor, frame('close_session', sessionId=session_id)
    )
    await protocol.handle_frame(admin, frame('visitor_start'))
    await protocol.handle_frame(
        admin, frame('visitor_message', message='fake visitor')
    )

    assert await store.count_messages(session_id) == 0
    assert len(await store.list_sessions()) == 1
    chat = await store.get_session(session_id)
    assert chat.is_open


@pytest.mark.asyncio
async def test_visitor_message_before_start_is_dropped(
    chat_hub, make_visitor
):
    visitor = make_visitor()
    chat_hub.protocol.connect(visitor)
    await chat_hub.protocol.handle_frame(
        visitor, frame('visitor_message', message='too early')
    )
    assert visitor.transport.sent == []


@pytest.mark.asyncio
async def test_stale_admin_events_are_dropped(
    chat_hub, store, make_visitor, make_admin
):
    protocol = chat_hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor)
    await protocol.close_session(session_id)
    sent_before = len(admin.transport.sent)

    await protocol.handle_frame(
        admin, frame('admin_message', sessionId=session_id, message='late')
    )
    await protocol.handle_frame(
        admin, frame('close_session', sessionId=session_id)
    )
    await protocol.handle_frame(
        admin, frame('close_session', sessionId='missing')
    )

    assert len(admin.transport.sent) == sent_before
    assert len(visitor.transport.of_type('session_closed')) == 1
    assert await store.count_messages(session_id) == 0


@pytest.mark.asyncio
async def test_store_failure_reports_error_to_sender(
    chat_hub, make_visitor, make_admin
):
    protocol = chat_hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    await start_visitor(protocol, visitor)
    chat_hub.store.add_message = AsyncMock(side_effect=StoreError('down'))

    await protocol.handle_frame(
        visitor, frame('visitor_message', message='lost?')
    )

    error = visitor.transport.last('error')
    assert error['code'] == 'store_failure'
    assert error['detail']
    assert visitor.transport.of_type('message_sent') == []
    assert admin.transport.of_type('new_message') == []


@pytest.mark.asyncio
async def test_admin_join_is_idempotent(chat_hub, make_admin):
    admin = make_admin()
    chat_hub.protocol.connect(admin)
    await chat_hub.protocol.handle_frame(admin, frame('admin_join'))
    await chat_hub.protocol.handle_frame(admin, frame('admin_join'))
    assert chat_hub.registry.all_admins() == [admin]

    chat_hub.protocol.disconnect(admin)
    assert chat_hub.registry.all_admins() == []


@pytest.mark.asyncio
async def test_load_messages(chat_hub, make_visitor, make_admin):
    protocol = chat_hub.protocol
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor)
    for text in ('one', 'two'):
        await protocol.handle_frame(
            visitor, frame('visitor_message', message=text)
        )

    admin = make_admin()
    protocol.connect(admin)
    await protocol.handle_frame(
        admin, frame('load_messages', sessionId=session_id)
    )
    loaded = admin.transport.last('messages_loaded')
    assert loaded['sessionId'] == session_id
    assert [m['message'] for m in loaded['messages']] == ['one', 'two']

    await protocol.handle_frame(
        admin, frame('load_messages', sessionId='missing')
    )
    assert len(admin.transport.of_type('messages_loaded')) == 1


@pytest.mark.asyncio
async def test_close_inactive_sessions_notifies(
    chat_hub, make_visitor, make_admin
):
    protocol = chat_hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor)

    closed = await protocol.close_inactive_sessions(
        utcnow() + timedelta(minutes=1)
    )
    assert [c.id for c in closed] == [session_id]
    assert visitor.transport.last('session_closed')['sessionId'] == session_id
    assert admin.transport.last('session_closed')['sessionId'] == session_id


@pytest.mark.asyncio
async def test_first_visitor_message_triggers_auto_reply_and_notify(
    store, make_visitor, make_admin
):
    notifier = AsyncMock()
    hub = ChatHub(
        store,
        auto_reply=AutoReply(text='We will answer soon', delay=0,
                             sender_name='Support'),
        notifier=notifier,
    )
    protocol = hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor, visitorName='Ann')

    await protocol.handle_frame(
        visitor, frame('visitor_message', message='first')
    )
    await protocol.handle_frame(
        visitor, frame('visitor_message', message='second')
    )
    await asyncio.gather(*protocol.pending_tasks)

    replies = [
        f['message'] for f in visitor.transport.of_type('new_message')
    ]
    assert [r['message'] for r in replies] == ['We will answer soon']
    assert replies[0]['senderName'] == 'Support'
    assert replies[0]['senderType'] == 'admin'
    assert await store.count_messages(session_id, SenderType.ADMIN) == 1

    notifier.assert_awaited_once()
    chat, message = notifier.await_args.args
    assert chat.id == session_id
    assert message.message == 'first'
    await hub.aclose()


@pytest.mark.asyncio
async def test_aclose_cancels_pending_auto_reply(store, make_visitor):
    hub = ChatHub(store, auto_reply=AutoReply(text='later', delay=30))
    visitor = make_visitor()
    session_id = await start_visitor(hub.protocol, visitor)
    await hub.protocol.handle_frame(
        visitor, frame('visitor_message', message='hi')
    )
    assert len(hub.protocol.pending_tasks) == 1

    await hub.aclose()
    assert hub.protocol.pending_tasks == []
    assert await store.count_messages(session_id, SenderType.ADMIN) == 0


@pytest.mark.asyncio
async def test_fan_out_follows_stored_order(
    chat_hub, store, make_visitor, make_admin, slow_transport
):
    protocol = chat_hub.protocol
    observer = make_admin('Bob')
    sender = make_admin('Alice')
    protocol.connect(observer)
    protocol.connect(sender)
    visitor = make_visitor(transport=slow_transport)
    session_id = await start_visitor(protocol, visitor)

    # the echo to the slow visitor is still in flight when the admin replies
    first = asyncio.create_task(
        protocol.handle_frame(visitor, frame('visitor_message', message='m1'))
    )
    await asyncio.sleep(0.05)
    await protocol.handle_frame(
        sender,
        frame('admin_message', sessionId=session_id, message='m2'),
    )
    await first

    stored = [m.message for m in await store.get_messages(session_id)]
    assert stored == ['m1', 'm2']
    seen = [
        f['message']['message']
        for f in observer.transport.of_type('new_message')
    ]
    assert seen == stored
    assert visitor.transport.types()[-2:] == ['message_sent', 'new_message']


@pytest.mark.asyncio
async def test_first_message_check_failure_still_confirms(
    store, make_visitor, make_admin
):
    notifier = AsyncMock()
    hub = ChatHub(store, notifier=notifier)
    protocol = hub.protocol
    admin = make_admin()
    protocol.connect(admin)
    visitor = make_visitor()
    session_id = await start_visitor(protocol, visitor)
    store.count_messages = AsyncMock(side_effect=StoreError('down'))

    await protocol.handle_frame(
        visitor, frame('visitor_message', message='saved anyway')
    )
    await asyncio.gather(*protocol.pending_tasks)

    sent = visitor.transport.last('message_sent')
    assert sent['message']['message'] == 'saved anyway'
    assert visitor.transport.of_type('error') == []
    assert admin.transport.last('new_message')['sessionId'] == session_id
    notifier.assert_not_awaited()
    await hub.aclose()
