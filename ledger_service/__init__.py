"""
Client Ledger Service

A small banking-ledger HTTP service: signed credit/debit transactions against
a fixed set of provisioned clients, with the ``balance >= -limit`` invariant
enforced by the storage layer.
"""

__version__ = "1.0.0"
