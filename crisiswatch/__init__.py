"""
CrisisWatch Session Crisis Monitoring & Escalation
==================================================

A Python library that watches a stream of conversational messages for
signs of acute psychological crisis and drives a graduated, auditable
escalation workflow: layered risk scoring, per-session crisis state,
intervention logging, human handoffs, and clinical review tracking.

DISCLAIMER: This software is not a certified clinical decision-support
system.  Risk scores are deterministic, explainable heuristics intended to
route conversations to trained humans.  They are not diagnoses.
"""

__version__ = "0.1.0"
