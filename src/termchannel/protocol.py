"""Wire constants and startup-message helpers shared by parent and child."""

SHUTDOWN_SIGNAL: bytes = b"\xff"
NO_CHANNEL: int = 0
TOKEN_KEY: str = "token"
WRITE_ID_KEY: str = "write_id"


def build_startup_message(token: str, write_id: int) -> dict[str, object]:
    """Build the message a child publishes once it knows its write id.

    :param token: Session token received at launch.
    :param write_id: Claimed write id, or ``NO_CHANNEL``.
    :returns: Startup message dictionary.
    """
    return {TOKEN_KEY: token, WRITE_ID_KEY: write_id}


def parse_startup_message(message: object, expected_token: str) -> int:
    """Extract the write id from a startup message.

    Anything malformed or addressed to another session reads as ``NO_CHANNEL``.

    :param message: Message received from the rendezvous.
    :param expected_token: Token this session handed to its child.
    :returns: Published write id or ``NO_CHANNEL``.
    """
    if isinstance(message, dict) is False:
        return NO_CHANNEL

    token: object = message.get(TOKEN_KEY)
    if token != expected_token:
        return NO_CHANNEL

    write_id: object = message.get(WRITE_ID_KEY)
    if isinstance(write_id, int) is False or isinstance(write_id, bool) is True:
        return NO_CHANNEL
    if write_id < 0:
        return NO_CHANNEL
    return write_id
