"""
Relational storage collaborator.

Provides the sqlite-backed Database used by the relational graph store,
the analysis engines, governance and provenance tracking.
"""

from neuron.storage.database import Database, Transaction

__all__ = ["Database", "Transaction"]
