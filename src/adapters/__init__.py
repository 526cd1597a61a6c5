"""Adapters that connect the circlewatch core to the ledger, storage, and push transports."""
