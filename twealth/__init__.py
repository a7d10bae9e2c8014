"""
Twealth Engine - Source Package

The quota and milestone accounting core behind the Twealth finance
assistant: usage limits, plan resolution, goal milestones, check-in
streaks and smart notifications.

DESIGN PRINCIPLES:
1. Quota is checked before any AI call, counted after it succeeds
2. Counters change atomically, never read-modify-write
3. Milestones and achievements are recorded at most once
4. Every significant step is auditable
5. Storage layer is swappable
"""

__version__ = "1.0.0"
__author__ = "Twealth Team"
