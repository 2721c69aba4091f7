"""Core marketplace engine: configuration, errors, ledger, store, market"""
