"""IB partner portal: trade sync and commission attribution engine."""

__version__ = "1.0.0"
