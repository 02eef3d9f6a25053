"""
examguard - integrity monitoring for proctored online exams
"""

__version__ = "1.0.0"
