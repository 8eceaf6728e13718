# CUI // SP-CTI
"""Refinery decision plane: ADRs, scorecards, policy, anti-oscillation, triage."""
