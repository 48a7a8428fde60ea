"""
bulkseo: bulk catalog optimization core.

Plans and entitlements gate the work, a windowed orchestrator runs the
generate phase, and an explicit apply phase commits accepted results and
settles their token cost.
"""

__version__ = "0.1.0"
