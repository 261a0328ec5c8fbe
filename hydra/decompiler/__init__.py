"""Decompilation of bytecode-only modules: adapters, cache and budget guard."""
