"""
Timesheet Ticket Matcher.

This package maps free-text todo work logs onto Jira tickets, combining
deterministic keyword scoring with batched LLM re-ranking, and renders the
result back into timesheet lines ready for worklog submission.
"""

__version__ = "1.0.0"
__author__ = "Automation Engineer"
