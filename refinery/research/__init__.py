# CUI // SP-CTI
"""Refinery research plane: cross-perspective consensus."""
