"""Delegated executors: subprocess adapters that perform one task inside a workspace."""
