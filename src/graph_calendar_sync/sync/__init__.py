"""
Sync engine (``engine``) and the pure reconciliation helpers it delegates to
(``resolver``, ``utils``).
"""
