"""Filtering, target following and JIT helpers."""
