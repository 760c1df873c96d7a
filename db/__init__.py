from .db import (
    Base,
    Booking,
    Client,
    Conversation,
    MessageTracking,
    Service,
    build_url,
    create_all,
    create_engine,
    make_session_maker,
)  # noqa: F401
from .store import MessageStatusStore  # noqa: F401
