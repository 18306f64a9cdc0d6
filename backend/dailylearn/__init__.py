"""
DailyLearn backend.

Daily content pipeline for the learning app: question selection per topic,
AI answer generation and push notification fan-out.
"""

__version__ = "1.0.0"
