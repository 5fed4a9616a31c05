"""
ContentVersion Transfer Tool - bulk file import/export for Salesforce orgs.
"""

__version__ = "0.1.0"
