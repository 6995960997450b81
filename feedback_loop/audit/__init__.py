"""Forensic capture, hash tree, audit chain and the JSONL ledger."""
