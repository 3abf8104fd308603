"""Persistence primitives shared by the job store."""
