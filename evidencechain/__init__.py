"""EvidenceChain: signed evidence, gated by an append-only ledger."""

__version__ = "0.1.0"
