"""Tests for rideway_chat."""

import logging

# reconnect tests close sockets under running readers
logging.getLogger("asyncio").setLevel(logging.ERROR)
