"""
shipgate - security-gated build and deploy pipeline orchestrator.

Runs a fixed, data-driven sequence of build, scan, sign, deploy and test
stages with hard/soft/informational gates, ephemeral backing services and
a report that stays valid on early abort.
"""

__version__ = "0.1.0"
