from typing import Optional

from relaychat.emoticons import substitute
from relaychat.errors import (
    FileTooLargeError,
    ProtocolError,
    TransportError,
    UnknownRecipientError,
)
from relaychat.models import Chat, ClientSession, FileOffer, PrivateMessage, Typing
from relaychat.state import ChatState, log, send_bytes, send_line
from relaychat.wire import (
    FILE,
    TYPING,
    discard_exact,
    encode_line,
    pack_file_size,
    parse_command,
    read_exact,
    read_file_size,
)


# --- Command handlers ---

def cmd_typing(state: ChatState, session: ClientSession) -> bool:
    """
    /typing -> TYPING:<name> to everyone but the sender.

    Throttled per sender: anything within typing_interval_ms of the last
    emitted notification is dropped. Returns True if we actually sent one.
    """
    now = state.now_ms()
    last = session.last_typing_ms
    if last is not None and now - last < state.config.typing_interval_ms:
        return False

    session.last_typing_ms = now
    state.broadcast(TYPING + session.name, exclude=session)
    return True


def cmd_private(state: ChatState, session: ClientSession, pm: PrivateMessage) -> None:
    """
    /pm <recipient> <body>

    Goes to the recipient, echoed once to the sender, and persisted.
    Messaging yourself gets you exactly one copy.
    """
    msg = substitute(f"[PM] {session.name} → {pm.recipient}: {pm.body}")

    target = state.registry.find_by_name(pm.recipient)
    if target is None:
        raise UnknownRecipientError(pm.recipient)

    state.record(msg)
    send_line(target, msg)
    if target is not session:
        send_line(session, msg)


def cmd_file(state: ChatState, session: ClientSession, offer: FileOffer) -> None:
    """
    /file <recipient> <filename>, followed on the same stream by an 8-byte
    big-endian length and then that many bytes.

    The length always follows a well-formed /file line, so it is always
    read. A refused offer (unknown recipient, too big) gets its reply and
    then the body is skipped, leaving the stream back on a line boundary.
    A negative length can't be skipped, so it ends the connection.

    The whole body is read before anything goes to the recipient, so a
    sender that dies halfway never leaves the recipient with half a file.
    """
    size = read_file_size(session.reader)
    if size < 0:
        raise TransportError(f"negative file length {size} from {session.name}")

    target = state.registry.find_by_name(offer.recipient)
    refused: Optional[ProtocolError] = None
    if target is None:
        refused = UnknownRecipientError(offer.recipient)
    elif size > state.config.max_file_size:
        refused = FileTooLargeError(size, state.config.max_file_size)

    if refused is not None:
        send_line(session, refused.reply)
        discard_exact(session.reader, size)
        return

    data = read_exact(session.reader, size)

    header = encode_line(f"{FILE}{session.name}:{offer.filename}")
    if not send_bytes(target, header, pack_file_size(size), data):
        send_line(session, f"SERVER: File transfer failed: {offer.recipient} disconnected")
        return

    log(f"{session.name} sent {size} bytes to {offer.recipient} ({offer.filename})")
    state.announce(substitute(
        f"SERVER: {session.name} sent file to {offer.recipient}: {offer.filename}"
    ))


def cmd_chat(state: ChatState, session: ClientSession, chat: Chat) -> None:
    """Anything that isn't a command: emoji it, persist it, send to everyone."""
    state.announce(substitute(f"{session.name}: {chat.body}"))


# --- Routing ---

def dispatch(state: ChatState, session: ClientSession, line: str) -> None:
    """
    Route one received line.

    Bad input (malformed command, unknown recipient, oversized file) gets a
    single SERVER: reply to the sender and changes nothing else. Transport
    errors are left for the session loop.
    """
    try:
        command = parse_command(line)

        if isinstance(command, Typing):
            cmd_typing(state, session)

        elif isinstance(command, PrivateMessage):
            cmd_private(state, session, command)

        elif isinstance(command, FileOffer):
            cmd_file(state, session, command)

        else:
            cmd_chat(state, session, command)

    except ProtocolError as e:
        send_line(session, e.reply)
