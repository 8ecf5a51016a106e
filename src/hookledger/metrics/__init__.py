"""Record production for hookledger.

Architecture:
    hooks.bridge (one event per process)
            | decoded event
            v
    TelemetryCollector (collector module)
            |  state      -> <state_dir>/<session>.json
            |  pricing    -> cost of the last transcript usage entry
            |  classifier -> prompt category
            v
    LedgerWriter (ledger module)
            |
            v
    <data_dir>/<category>.csv
"""
