#!/usr/bin/env python3
"""
Unit tests for resolving mapped LDAP attributes into user data.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_user_mappings.catalog import StaticFieldCatalog
from ldap_user_mappings.ldap_client import DirectorySearchResult
from ldap_user_mappings.settings_store import MemorySettingsStore
from ldap_user_mappings.mappings import (
    LDAPUserMappings, FieldMapping, AttributeResolutionError,
    AltDNConfigurationError, FilterAttributeMissingError
)

BASE_DN = 'ou=people,dc=example,dc=com'


class TestResolveAttributes(unittest.TestCase):
    """Test cases for resolve_attributes."""

    def setUp(self):
        self.mappings = LDAPUserMappings(MemorySettingsStore(), StaticFieldCatalog(['theField']))
        self.directory = Mock()
        self.directory.connected = True
        self.directory.search.return_value = DirectorySearchResult()
        self.base_results = DirectorySearchResult([{
            'dn': ['uid=jdoe,ou=people,dc=example,dc=com'],
            'uid': ['jdoe'],
            'mail': ['a@b.com', 'other@b.com'],
            'departmentNumber': ['42'],
        }])

    def resolve(self, config):
        return self.mappings.resolve_attributes(self.directory, BASE_DN, self.base_results, config)

    def test_base_dn_lookup(self):
        userdata = self.resolve({'theField': FieldMapping('', 'mail')})
        self.assertEqual(userdata, {'theField': 'a@b.com'})
        self.directory.search.assert_not_called()

    def test_base_dn_lookup_is_case_insensitive(self):
        userdata = self.resolve({'theField': FieldMapping('', 'departmentnumber')})
        self.assertEqual(userdata, {'theField': '42'})

    def test_base_dn_lookup_not_found_contributes_nothing(self):
        userdata = self.resolve({'theField': FieldMapping('', 'telephonenumber')})
        self.assertEqual(userdata, {})

    def test_empty_ldap_attr_skipped(self):
        userdata = self.resolve({
            'theField': FieldMapping('', ''),
            'other': FieldMapping('badvalue', '   '),
        })
        self.assertEqual(userdata, {})
        self.assertNotIn('theField', userdata)
        self.directory.search.assert_not_called()

    def test_alternate_dn_lookup(self):
        self.directory.search.return_value = DirectorySearchResult([{'title': ['Engineer']}])
        userdata = self.resolve({'theField': FieldMapping('ou=alt,dc=example,dc=com;uid', 'title')})

        self.directory.search.assert_called_once_with('ou=alt,dc=example,dc=com', 'uid=jdoe')
        self.assertEqual(userdata, {'theField': 'Engineer'})

    def test_alternate_dn_tokens_trimmed(self):
        self.directory.search.return_value = [{'title': ['Engineer']}]
        self.resolve({'theField': FieldMapping(' ou=alt,dc=example,dc=com ; uid ', 'title')})
        self.directory.search.assert_called_once_with('ou=alt,dc=example,dc=com', 'uid=jdoe')

    def test_alternate_dn_filter_value_escaped(self):
        self.base_results = DirectorySearchResult([{'cn': ['Doe (John)*']}])
        self.resolve({'theField': FieldMapping('ou=alt;cn', 'title')})
        self.directory.search.assert_called_once_with('ou=alt', 'cn=Doe \\28John\\29\\2a')

    def test_alternate_dn_not_found_contributes_nothing(self):
        self.directory.search.return_value = DirectorySearchResult([{'cn': ['x']}])
        userdata = self.resolve({'theField': FieldMapping('ou=alt;uid', 'title')})
        self.assertEqual(userdata, {})

    def test_alternate_dn_empty_result_contributes_nothing(self):
        userdata = self.resolve({'theField': FieldMapping('ou=alt;uid', 'title')})
        self.assertEqual(userdata, {})

    def test_alternate_dn_without_filter_raises(self):
        with self.assertRaises(AltDNConfigurationError) as context:
            self.resolve({'theField': FieldMapping('badvalue', 'mail')})

        error = context.exception
        self.assertEqual(error.field, 'theField')
        self.assertEqual(error.mapping, FieldMapping('badvalue', 'mail'))
        self.assertIn('theField', str(error))
        self.assertIn('badvalue', str(error))
        self.directory.search.assert_not_called()

    def test_missing_filter_attribute_raises(self):
        with self.assertRaises(FilterAttributeMissingError) as context:
            self.resolve({'theField': FieldMapping('ou=alt;employeeid', 'title')})

        self.assertIn('employeeid', str(context.exception))
        self.assertIsInstance(context.exception, AttributeResolutionError)
        self.directory.search.assert_not_called()

    def test_fatal_error_keeps_earlier_values(self):
        config = {
            'email': FieldMapping('', 'mail'),
            'broken': FieldMapping('ou=alt;uid;cn', 'title'),
            'department': FieldMapping('', 'departmentnumber'),
        }
        with self.assertRaises(AltDNConfigurationError) as context:
            self.resolve(config)

        self.assertEqual(context.exception.partial, {'email': 'a@b.com'})
        self.assertEqual(self.mappings.userdata, {'email': 'a@b.com'})

    def test_unavailable_directory_skips_resolution(self):
        config = {'theField': FieldMapping('badvalue', 'mail')}
        self.assertEqual(self.mappings.resolve_attributes(None, BASE_DN, self.base_results, config), {})
        self.assertEqual(self.mappings.resolve_attributes(False, BASE_DN, self.base_results, config), {})

        self.directory.connected = False
        self.assertEqual(self.resolve(config), {})
        self.directory.search.assert_not_called()

    def test_raw_entry_list_accepted(self):
        self.base_results = [{'mail': ['raw@b.com']}]
        userdata = self.resolve({'theField': FieldMapping('', 'mail')})
        self.assertEqual(userdata, {'theField': 'raw@b.com'})

    def test_uses_loaded_mapping_by_default(self):
        store = MemorySettingsStore({
            'simpleldap_user_attr_map': {'theField': {'alt_dn': '', 'ldap_attr': 'mail'}}
        })
        mappings = LDAPUserMappings(store, StaticFieldCatalog(['theField']))
        userdata = mappings.resolve_attributes(self.directory, BASE_DN, self.base_results)
        self.assertEqual(userdata, {'theField': 'a@b.com'})

    def test_each_pass_starts_fresh(self):
        self.resolve({'theField': FieldMapping('', 'mail')})
        userdata = self.resolve({'other': FieldMapping('', 'uid')})
        self.assertEqual(userdata, {'other': 'jdoe'})

    def test_nested_pass_does_not_share_results(self):
        nested = {}

        def search(base_dn, search_filter):
            nested['userdata'] = self.resolve({'other': FieldMapping('', 'uid')})
            return DirectorySearchResult([{'title': ['Engineer']}])

        self.directory.search.side_effect = search
        userdata = self.resolve({
            'email': FieldMapping('', 'mail'),
            'title': FieldMapping('ou=alt;uid', 'title'),
        })

        self.assertEqual(userdata, {'email': 'a@b.com', 'title': 'Engineer'})
        self.assertEqual(nested['userdata'], {'other': 'jdoe'})
        self.assertEqual(self.mappings.userdata, userdata)

    def test_empty_filter_value_treated_as_missing(self):
        self.base_results = DirectorySearchResult([{'uid': ['']}])
        with self.assertRaises(FilterAttributeMissingError):
            self.resolve({'theField': FieldMapping('ou=alt;uid', 'title')})
        self.directory.search.assert_not_called()

    def test_zero_filter_value_is_searched(self):
        self.base_results = DirectorySearchResult([{'employeeNumber': ['0']}])
        self.resolve({'theField': FieldMapping('ou=alt;employeenumber', 'title')})
        self.directory.search.assert_called_once_with('ou=alt', 'employeenumber=0')


if __name__ == '__main__':
    unittest.main()
