class ChatError(Exception):
    """Base class for everything the chat server raises on purpose."""


class HandshakeError(ChatError):
    """Client hung up or picked a name we can't accept."""


class TransportError(ChatError):
    """Read/write on a session's socket failed, or a binary frame came up short."""


class ProtocolError(ChatError):
    """
    Malformed client command.

    The message is the exact line we send back to the sender.
    """

    def __init__(self, reply: str):
        super().__init__(reply)
        self.reply = reply


class UnknownRecipientError(ProtocolError, LookupError):
    def __init__(self, recipient: str):
        super().__init__(f"SERVER: User '{recipient}' not found")
        self.recipient = recipient


class FileTooLargeError(ProtocolError):
    def __init__(self, size: int, limit: int):
        super().__init__("SERVER: File exceeds 5MB limit")
        self.size = size
        self.limit = limit


class PersistenceError(ChatError):
    """Appending to the history file failed."""
