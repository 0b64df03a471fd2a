"""
Evidence Custody Ledger

Tamper-evident chain of custody for physical and digital evidence.
Every write is hash-chained, signed, and attested by a Merkle root.
"""

__version__ = "0.1.0"
