"""Inbound SMS polling service with one-time-code extraction."""

from dotenv import load_dotenv

load_dotenv()

__version__ = "1.0.0"
