"""
UI test agent - drives a screenshot/reason/act loop for natural-language test scenarios.
"""

__version__ = "0.1.0"
