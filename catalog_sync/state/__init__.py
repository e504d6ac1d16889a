"""Checkpoints, progress counters, snapshots and status logs."""
