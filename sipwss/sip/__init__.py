"""SIP messages, REGISTER builder and registration session."""

from .messages import *
from .register import *
from .session import *
