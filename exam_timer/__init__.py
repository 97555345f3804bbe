"""
Exam Room Timer Service

Server-authoritative countdowns for proctored group exams.
Each room shares one timer that every connected client observes.
"""

__version__ = "0.1.0"
