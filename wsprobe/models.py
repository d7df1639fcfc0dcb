"""
Core data models
"""
from datetime import datetime
from enum import Enum
from typing import Dict, Optional
from pydantic import BaseModel, Field


class FrameProtocol(str, Enum):
    """Sub-protocol carried inside WebSocket text frames"""

    SOCKET_IO = "socket.io"      # Engine.IO / Socket.IO multiplexed envelope
    SIGNALR = "signalr"          # record-separated JSON
    GRAPHQL_WS = "graphql-ws"    # JSON control messages
    ACTION_CABLE = "actioncable"  # double-encoded JSON envelope
    STOMP = "stomp"              # line-based command + headers
    SOCKJS = "sockjs"            # single-character control frames
    JSON = "json"                # plain JSON, no envelope
    RAW = "raw"                  # unrecognized


class ConnectionState(str, Enum):
    """Lifecycle of a WebSocketConnection"""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Direction(str, Enum):
    """Direction of a captured frame"""

    CLIENT_TO_SERVER = "client_to_server"
    SERVER_TO_CLIENT = "server_to_client"

    @property
    def arrow(self) -> str:
        return "↑" if self is Direction.CLIENT_TO_SERVER else "↓"


class DecodedFrame(BaseModel):
    """
    Uniform representation of one decoded frame.

    Only the attributes relevant to ``protocol`` are populated; the rest
    keep their defaults. ``fields`` is built once by the field extractor and
    is read-only to every consumer afterwards.
    """

    raw: str
    protocol: FrameProtocol
    is_control: bool = False
    event_name: str = ""

    # Socket.IO
    engineio_type: Optional[str] = None
    socketio_type: Optional[str] = None
    namespace: Optional[str] = None
    ack_id: Optional[str] = None

    # SignalR
    signalr_type: Optional[int] = None
    signalr_type_name: Optional[str] = None

    # Action Cable
    inner_data: Optional[str] = None
    inner_identifier: Optional[str] = None

    # GraphQL-WS
    subscription_id: Optional[str] = None

    # STOMP
    headers: Dict[str, str] = Field(default_factory=dict)

    # Common
    body: Optional[str] = None
    fields: Dict[str, str] = Field(default_factory=dict)

    @property
    def fuzzable_body(self) -> str:
        """Sub-payload that can be mutated without breaking the envelope."""
        if self.inner_data is not None:
            return self.inner_data
        if self.body is not None:
            return self.body
        return self.raw


class FrameEntry(BaseModel):
    """Captured frame as recorded by a FrameInspector"""

    id: int
    direction: Direction
    raw: str
    url: str
    protocol: FrameProtocol
    is_control: bool = False
    event_name: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    length: int = 0
    decoded: Optional[DecodedFrame] = None

    def __str__(self) -> str:
        return "[%s] %s %s %s (%d bytes)" % (
            self.timestamp.strftime("%H:%M:%S.%f")[:-3],
            self.direction.arrow,
            self.protocol.value,
            self.event_name,
            self.length,
        )
