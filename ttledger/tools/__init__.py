"""
Tools for ttledger.

This module contains:
- cli: the `tt` command-line tool
"""
