# CUI // SP-CTI
"""Refinery delivery plane: delivery plans, test evaluation, governance and releases."""
