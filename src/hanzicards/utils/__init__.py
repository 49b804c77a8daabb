"""Shared utilities: provider clients, storage adapters, text helpers."""
