# CUI // SP-CTI
"""Refinery research operations: research case lifecycle and validation."""
