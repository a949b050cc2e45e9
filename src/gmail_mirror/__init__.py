"""Gmail Mirror: sync Gmail mailboxes into a local store."""

__version__ = "0.1.0"
