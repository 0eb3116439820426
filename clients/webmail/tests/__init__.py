"""Test package for webmail unit and integration tests."""

import logging

logging.getLogger("asyncio").setLevel(logging.ERROR)
