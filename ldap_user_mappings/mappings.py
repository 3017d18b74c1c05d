"""
Mapping of user-profile metadata fields to LDAP attributes.

This module keeps the field -> attribute mapping in step with the catalog of
known metadata fields and the settings store, and resolves mapped attribute
values out of directory search results into a flat user record.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional, Tuple, Mapping

from ldap3.utils.conv import escape_filter_chars

from ldap_user_mappings.ldap_client import DirectorySearchResult
from ldap_user_mappings.logging_setup import audit_logger

logger = logging.getLogger(__name__)


# Form field prefix for the alternate DN of a field
ALT_DN_PREFIX = 'ldap_alt_dn_'

# Form field prefix for the LDAP attribute name of a field
LDAP_ATTR_PREFIX = 'ldap_attr_'

# Settings store key holding the mapping configuration
MAPPING_OPTION_KEY = 'simpleldap_user_attr_map'

# System-reserved metadata fields that are never mapped
EXCLUDED_META_KEYS = (
    'admin_color',
    'comment_shortcuts',
    'dismissed_wp_pointers',
    'rich_editing',
    'show_admin_bar_front',
    'show_welcome_panel',
    'use_ssl',
    'wp_capabilities',
    'wp_dashboard_quick_press_last_post_id',
    'wp_user-settings',
    'wp_user-settings-time',
    'wp_user_level',
    'first_name',
    'last_name',
    'description',
    'nickname',
)


class AltDNFormatError(ValueError):
    """Raised when an alternate DN value is not exactly ``dn;filter_attribute``."""
    pass


class AttributeResolutionError(Exception):
    """
    Base exception for errors that abort an attribute resolution pass.

    Carries the offending field, its mapping entry and the values resolved
    before the failure.
    """

    def __init__(self, field: str, mapping: 'FieldMapping', reason: str,
                 partial: Optional[Dict[str, str]] = None):
        self.field = field
        self.mapping = mapping
        self.reason = reason
        self.partial = dict(partial or {})
        super().__init__(
            f"Cannot resolve field '{field}' (alt_dn='{mapping.alt_dn}', "
            f"ldap_attr='{mapping.ldap_attr}'): {reason}"
        )


class AltDNConfigurationError(AttributeResolutionError):
    """Raised when a field's alternate DN has no accompanying filter attribute."""
    pass


class FilterAttributeMissingError(AttributeResolutionError):
    """Raised when the filter attribute is not present in the base search result."""
    pass


@dataclass(frozen=True)
class AlternateDN:
    """Decoded alternate search base and the attribute used to correlate entries."""
    dn: str
    filter_attribute: str

    @classmethod
    def parse(cls, value: str) -> 'AlternateDN':
        tokens = [token.strip() for token in value.split(';')]
        if len(tokens) != 2 or not all(tokens):
            raise AltDNFormatError(
                f"Alternate DN '{value}' must be '<dn>;<filter attribute>'"
            )
        return cls(dn=tokens[0], filter_attribute=tokens[1])


@dataclass
class FieldMapping:
    """Mapping of one metadata field to an LDAP attribute."""
    alt_dn: str = ''
    ldap_attr: str = ''

    @classmethod
    def from_value(cls, value: Any) -> 'FieldMapping':
        """Build a mapping from a stored record, defaulting anything unusable to ''."""
        if isinstance(value, FieldMapping):
            return cls(value.alt_dn, value.ldap_attr)
        if not isinstance(value, Mapping):
            return cls()
        alt_dn = value.get('alt_dn', '')
        ldap_attr = value.get('ldap_attr', '')
        return cls(
            alt_dn=alt_dn if isinstance(alt_dn, str) else '',
            ldap_attr=ldap_attr if isinstance(ldap_attr, str) else ''
        )

    def to_dict(self) -> Dict[str, str]:
        return {'alt_dn': self.alt_dn, 'ldap_attr': self.ldap_attr}

    def alternate(self) -> Optional[AlternateDN]:
        """
        Decode the alternate DN.

        Returns:
            None when no alternate DN is configured

        Raises:
            AltDNFormatError: If the value is not exactly two non-empty tokens
        """
        if not self.alt_dn.strip():
            return None
        return AlternateDN.parse(self.alt_dn)


class LDAPUserMappings:
    """
    Maps user metadata fields to LDAP attributes.

    Loads and saves the mapping configuration through a settings store,
    reconciles it with the field catalog and with submitted admin form input,
    and resolves mapped values from directory search results.
    """

    def __init__(self, settings_store, field_catalog,
                 option_key: str = MAPPING_OPTION_KEY,
                 exclusions: Optional[List[str]] = None,
                 alt_dn_prefix: str = ALT_DN_PREFIX,
                 ldap_attr_prefix: str = LDAP_ATTR_PREFIX,
                 prune_stale_fields: bool = False):
        """
        Initialize the mapping adapter.

        Args:
            settings_store: Object providing get_option/update_option
            field_catalog: Object providing list_distinct_meta_field_names
            option_key: Settings key the mapping is stored under
            exclusions: Additional field names to exclude on top of EXCLUDED_META_KEYS
            alt_dn_prefix: Form field prefix for alternate DN values
            ldap_attr_prefix: Form field prefix for LDAP attribute values
            prune_stale_fields: Drop stored entries for fields no longer in the catalog
        """
        self.settings_store = settings_store
        self.field_catalog = field_catalog
        self.option_key = option_key
        self.exclusions = frozenset(EXCLUDED_META_KEYS).union(exclusions or [])
        self.alt_dn_prefix = alt_dn_prefix
        self.ldap_attr_prefix = ldap_attr_prefix
        self.prune_stale_fields = prune_stale_fields

        self.field_names: Optional[List[str]] = None
        self.ldap_mappings: Optional[Dict[str, FieldMapping]] = None
        self.userdata: Dict[str, str] = {}

    @classmethod
    def from_config(cls, config: Dict[str, Any], settings_store, field_catalog) -> 'LDAPUserMappings':
        """Create an adapter from the 'mappings' configuration section."""
        return cls(
            settings_store,
            field_catalog,
            option_key=config.get('option_key', MAPPING_OPTION_KEY),
            exclusions=config.get('exclusions', []),
            alt_dn_prefix=config.get('alt_dn_prefix', ALT_DN_PREFIX),
            ldap_attr_prefix=config.get('ldap_attr_prefix', LDAP_ATTR_PREFIX),
            prune_stale_fields=config.get('prune_stale_fields', False)
        )

    def is_excluded(self, field_name: str) -> bool:
        return field_name in self.exclusions

    def load_field_names(self) -> List[str]:
        """
        Load the distinct metadata field names, without excluded ones.

        Returns:
            Field names in catalog order
        """
        names = []
        seen = set()
        for name in self.field_catalog.list_distinct_meta_field_names():
            if not isinstance(name, str) or not name.strip():
                continue
            if name in seen or self.is_excluded(name):
                continue
            seen.add(name)
            names.append(name)

        logger.debug(f"Loaded {len(names)} mappable field names")
        self.field_names = names
        return names

    def _current_field_names(self) -> List[str]:
        if self.field_names is None:
            return self.load_field_names()
        return self.field_names

    def load_mapping(self) -> Dict[str, FieldMapping]:
        """
        Load the mapping configuration from the settings store.

        When nothing is stored, an empty mapping is synthesized for each field
        name; it is not saved until persist() is called.

        Returns:
            Mapping of field name to FieldMapping
        """
        field_names = self._current_field_names()
        stored = self.settings_store.get_option(self.option_key, None)

        if not stored or not isinstance(stored, Mapping):
            logger.info(f"No stored mapping under '{self.option_key}', using empty mappings")
            self.ldap_mappings = {name: FieldMapping() for name in field_names}
            return self.ldap_mappings

        mappings = {}
        for name, value in stored.items():
            if self.is_excluded(name):
                logger.debug(f"Dropping excluded field '{name}' from stored mapping")
                continue
            if self.prune_stale_fields and name not in field_names:
                logger.debug(f"Dropping stale field '{name}' from stored mapping")
                continue
            mappings[name] = FieldMapping.from_value(value)

        for name in field_names:
            mappings.setdefault(name, FieldMapping())

        logger.debug(f"Loaded mapping with {len(mappings)} entries")
        self.ldap_mappings = mappings
        return mappings

    def apply_submitted_mapping(self, config: Optional[Dict[str, FieldMapping]],
                                form_input: Any) -> Dict[str, FieldMapping]:
        """
        Apply submitted admin form values to a mapping configuration.

        Every current field is replaced with the trimmed, lower-cased values of
        its two form fields; missing or non-string values become ''.

        Args:
            config: Mapping to update (the loaded mapping if None)
            form_input: Flat mapping of form field name to value

        Returns:
            The updated mapping
        """
        if config is None:
            config = self.ldap_mappings if self.ldap_mappings is not None else self.load_mapping()

        updated = dict(config)
        if not isinstance(form_input, Mapping):
            logger.warning("Ignoring submitted mapping: form input is not a mapping")
            self.ldap_mappings = updated
            return updated

        for name in self._current_field_names():
            updated[name] = FieldMapping(
                alt_dn=self._form_value(form_input, self.alt_dn_prefix + name),
                ldap_attr=self._form_value(form_input, self.ldap_attr_prefix + name)
            )

        self.ldap_mappings = updated
        return updated

    @staticmethod
    def _form_value(form_input: Mapping, key: str) -> str:
        value = form_input.get(key, '')
        if not isinstance(value, str):
            return ''
        return value.lower().strip()

    def persist(self, config: Any = None) -> None:
        """Save the mapping configuration to the settings store."""
        if config is None:
            config = self.ldap_mappings
        if not isinstance(config, Mapping):
            logger.debug("Not persisting mapping: configuration is not a mapping")
            return

        value = {name: FieldMapping.from_value(mapping).to_dict()
                 for name, mapping in config.items()}
        self.settings_store.update_option(self.option_key, value)
        audit_logger.log_mapping_saved(self.option_key, len(value))

    def form_fields(self) -> List[Tuple[str, str, str, FieldMapping]]:
        """
        Rows for rendering the admin mapping form.

        Returns:
            List of (field name, alt DN form key, LDAP attribute form key, mapping)
        """
        mappings = self.ldap_mappings if self.ldap_mappings is not None else self.load_mapping()
        return [
            (name,
             self.alt_dn_prefix + name,
             self.ldap_attr_prefix + name,
             mappings.get(name, FieldMapping()))
            for name in self._current_field_names()
        ]

    def resolve_attributes(self, directory, base_dn: str, base_results,
                           config: Optional[Dict[str, FieldMapping]] = None) -> Dict[str, str]:
        """
        Resolve mapped LDAP attribute values into user data.

        Fields with an alternate DN are looked up with a secondary search on
        that DN, filtered by the value of the filter attribute in the base
        result. All other fields are read from the base result directly.

        Args:
            directory: Directory client providing search(base_dn, search_filter)
            base_dn: Base DN the base results were searched under
            base_results: Base search results (DirectorySearchResult or entry list)
            config: Mapping to resolve (the loaded mapping if None)

        Returns:
            Mapping of field name to resolved value

        Raises:
            AltDNConfigurationError: If an alternate DN lacks a filter attribute
            FilterAttributeMissingError: If the filter attribute is not in the base result
        """
        userdata = {}
        if not directory or not getattr(directory, 'connected', True):
            logger.debug("Directory unavailable, skipping attribute resolution")
            self.userdata = userdata
            return userdata

        if config is None:
            config = self.ldap_mappings if self.ldap_mappings is not None else self.load_mapping()

        base = DirectorySearchResult.coerce(base_results)
        logger.debug(f"Resolving {len(config)} field mappings against base DN {base_dn}")

        try:
            for field, mapping in config.items():
                value = self._resolve_field(directory, field, mapping, base, userdata)
                if value is not None:
                    userdata[field] = value
        finally:
            # Partial results stay visible after a failed pass
            self.userdata = userdata

        logger.info(f"Resolved {len(userdata)} of {len(config)} mapped fields")
        return userdata

    def _resolve_field(self, directory, field: str, mapping: FieldMapping,
                       base: DirectorySearchResult, userdata: Dict[str, str]) -> Optional[str]:
        ldap_attr = mapping.ldap_attr.strip()
        if not ldap_attr:
            return None

        try:
            alternate = mapping.alternate()
        except AltDNFormatError:
            error = AltDNConfigurationError(
                field, mapping,
                "an alternate DN requires an accompanying filter attribute",
                userdata
            )
            audit_logger.log_resolution_failure(field, error.reason)
            raise error

        if alternate is None:
            return base.first_value(ldap_attr)

        filter_value = base.first_value(alternate.filter_attribute)
        if not filter_value:
            error = FilterAttributeMissingError(
                field, mapping,
                f"filter attribute '{alternate.filter_attribute}' was not found in the base result",
                userdata
            )
            audit_logger.log_resolution_failure(field, error.reason)
            raise error

        search_filter = f"{alternate.filter_attribute}={escape_filter_chars(filter_value)}"
        logger.debug(f"Secondary search for field '{field}': base={alternate.dn} filter={search_filter}")
        results = DirectorySearchResult.coerce(directory.search(alternate.dn, search_filter))
        return results.first_value(ldap_attr)
