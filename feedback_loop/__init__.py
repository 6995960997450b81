"""
Feedback Loop - self-correcting source weighting with a sealed audit trail.

Compares predicted and realized state at fixed horizons, recalibrates
per-source weights when predictions fail, and seals every recalibration
into a hash-chained ledger.

Modules:
    config - YAML configuration and schema validation
    registry - Observations, the shared registry and ingestion routing
    monitoring - SPD geometry and the outcome monitor
    reweighting - Weight vectors, the exogenous cap and the reweighting engine
    audit - Forensic capture, hash tree, audit chain and JSONL ledger
    loop - Component wiring and lifecycle
    cli - Command-line interface entrypoints
"""

__version__ = "0.1.0"
