"""
Subscriber Automation Engine

Event-driven automation workflows for newsletter publications: trigger
matching, branching execution, durable waits and resumable retries.
"""

__version__ = "1.0.0"
