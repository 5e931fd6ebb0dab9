"""Test package for the dual N-back stimulus engine.

These tests cover match planning, materialization, performance snapshots,
adaptive control and streaming generation. Everything is seeded and clocks
are faked, so the suite is deterministic. Run ``pytest`` from the project
root.
"""
