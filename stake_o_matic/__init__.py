"""Stake whitelisted Solana validators according to their liveness and block production."""

__version__ = "0.1.0"
