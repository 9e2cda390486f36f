import logging
from pathlib import Path

import pytest
import structlog

from chatvault.config import ChatVaultSettings
from chatvault.errors import ScopeRequired, StoreUnavailable
from chatvault.services import MessageService
from chatvault.services.messages import ATTACHMENTS_ROOT, resolve_attachment_path


async def test_list_chats_orders_by_last_activity(service):
    chats = await service.list_chats()
    assert [chat.chat_id for chat in chats] == [1, 2, 5]

    family = chats[0]
    assert family.display_name == "Family"
    assert sorted(family.participants) == ["+14155550132", "bob@example.com", "dave@example.org"]
    assert family.last_message_iso_utc == "2024-01-01T00:22:00.000Z"
    assert chats[1].display_name is None


async def test_list_chats_respects_limit(service):
    chats = await service.list_chats(limit=1)
    assert len(chats) == 1


async def test_get_messages_returns_newest_in_ascending_order(service):
    listing = await service.get_messages(chat_id=5, limit=3)
    assert [message.message_rowid for message in listing.messages] == [104, 105, 106]
    assert listing.handles is None


async def test_get_messages_requires_scope(service):
    with pytest.raises(ScopeRequired):
        await service.get_messages()
    with pytest.raises(ScopeRequired):
        await service.get_messages(participant="   ")


async def test_get_messages_by_participant_spans_their_chats(service):
    listing = await service.get_messages(participant="bob@example.com")
    assert [message.message_rowid for message in listing.messages] == [201, 202, 203, 204, 301, 302, 303]
    assert listing.handles.handles == ["bob@example.com"]

    by_rowid = {message.message_rowid: message for message in listing.messages}
    assert (by_rowid[201].message_type, by_rowid[201].subtype) == ("text", None)
    assert (by_rowid[202].message_type, by_rowid[202].subtype) == ("reaction", "love")
    assert by_rowid[202].metadata["associated_message_guid"] == "p:0/msg-201"
    assert (by_rowid[203].message_type, by_rowid[203].subtype) == (
        "effect",
        "com.apple.MobileSMS.expressivesend.impact",
    )
    assert by_rowid[203].metadata["reply_to_guid"] == "msg-201"
    assert (by_rowid[204].message_type, by_rowid[204].subtype) == ("reaction_removed", "like")


async def test_decoded_mentions_land_in_metadata(service):
    listing = await service.get_messages(chat_id=1)
    mention_message = next(message for message in listing.messages if message.message_rowid == 303)
    assert mention_message.text == "Hey @Bob"
    assert mention_message.text_source == "primary-parser"
    assert mention_message.metadata["mentions"] == [{"offset": 4, "length": 4, "handle": "bob@example.com"}]


async def test_context_window_is_centered_on_anchor(service):
    context = await service.context_around_message(103, before=1, after=1)
    assert context.chat_id == 5
    assert [message.message_rowid for message in context.messages] == [102, 103, 104]
    assert context.truncated is True
    assert context.total_considered == 5


async def test_context_window_at_edges(service):
    context = await service.context_around_message(103, before=2, after=10)
    assert [message.message_rowid for message in context.messages] == [101, 102, 103, 104, 105, 106]
    assert context.truncated is False
    timestamps = [message.unix_ms for message in context.messages]
    assert timestamps == sorted(timestamps)

    first = await service.context_around_message(101, before=5, after=0)
    assert [message.message_rowid for message in first.messages] == [101]
    assert first.total_considered == 1


async def test_context_for_missing_anchor_is_empty(service):
    context = await service.context_around_message(9999)
    assert context.anchor_rowid == 9999
    assert context.messages == []
    assert context.total_considered == 0


async def test_get_attachments_groups_and_caps_per_row(service):
    grouped = await service.get_attachments([106, 999, 106], per_row_cap=2)
    assert list(grouped) == [106, 999]
    assert grouped[999] == []

    records = grouped[106]
    assert [record.guid for record in records] == ["at_0_PHOTO", "at_1_DOC"]
    assert records[0].path == str(Path.home() / "Library/Messages/Attachments/ab/12/IMG_0001.heic")
    assert records[1].path == str(ATTACHMENTS_ROOT / "ab/13/notes.pdf")
    assert records[0].mime_type == "image/heic"
    assert records[0].total_bytes == 2048


async def test_get_attachments_uses_configured_cap(service):
    grouped = await service.get_attachments([106])
    assert [record.path for record in grouped[106]][-1] == "/tmp/chatvault/readme.txt"
    assert await service.get_attachments([]) == {}


def test_resolve_attachment_path():
    assert resolve_attachment_path(None) is None
    assert resolve_attachment_path("") is None
    assert resolve_attachment_path("/abs/file.png") == Path("/abs/file.png")
    assert resolve_attachment_path("rel/file.png", base=Path("/base")) == Path("/base/rel/file.png")


async def test_resolve_handles_through_service(service):
    handles = await service.resolve_handles("Family")
    assert len(handles) == 3


async def test_unreadable_store_surfaces_store_unavailable(tmp_path):
    service = MessageService(ChatVaultSettings(chat_db_path=str(tmp_path / "missing.db")))
    with pytest.raises(StoreUnavailable) as excinfo:
        await service.list_chats()
    assert "Full Disk Access" in excinfo.value.user_message()


async def test_service_logs_stay_off_stdout(chat_db, capfd):
    structlog.reset_defaults()
    try:
        service = MessageService(ChatVaultSettings(chat_db_path=str(chat_db), log_level="DEBUG"))
        assert structlog.is_configured()
        await service.get_messages(chat_id=5)
        assert capfd.readouterr().out == ""
    finally:
        structlog.reset_defaults()
        logging.getLogger().setLevel(logging.WARNING)
