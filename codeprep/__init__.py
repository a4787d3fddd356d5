"""Client library for timed coding-interview sessions, plus a small reference backend."""

__version__ = "0.1.0"
