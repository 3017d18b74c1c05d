"""
LDAP User Mappings - Map user-profile metadata fields to LDAP attributes.

This package keeps a configurable field -> LDAP attribute mapping and uses it
to resolve attribute values from directory search results into user records.
"""

__version__ = "1.0.0"
__author__ = "LDAP User Mappings Team"
