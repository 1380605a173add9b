"""Reputation root publisher: verifiable reputation state, proof oracle and
the submission scheduler that anchors roots on an external ledger."""

__version__ = "0.1.0"
