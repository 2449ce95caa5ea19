"""
Single-flight release runner: accepts release requests per commit, runs at
most one release action at a time, and keeps a durable ledger of outcomes.
"""

__version__ = "0.1.0"
