"""
Core modules for copyforge.

This package contains the generation pipeline: the error taxonomy, pricing
and spend ledger, content parsing, image matching, the durable queue, the
concurrency gate, and the orchestrator that composes them.
"""
