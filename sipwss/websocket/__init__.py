"""WebSocket client transport: frames codec, opening handshake and connection."""

from .connection import *
from .frames import *
from .handshake import *
