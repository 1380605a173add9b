"""Publisher runtime.

Single-writer process that folds the ledger's pending change log into a
new reputation version once per window, submits the root, and confirms it.
The ledger itself is reached only through the LedgerClient protocol.
"""
