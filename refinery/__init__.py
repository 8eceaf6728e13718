# CUI // SP-CTI
"""Refinery Decision Plane.

Consensus clustering, hysteretic (anti-oscillation) decision enforcement,
triage, and the release / research-case lifecycles that gate a change from
"proposed" through "decided" to "released".
"""

__version__ = "0.4.0"
