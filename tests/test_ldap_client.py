#!/usr/bin/env python3
"""
Unit tests for the LDAP client.

Covers connection establishment with retry logic, TLS settings, paged and
plain searches, response conversion and vendor detection. ldap3's Server and
Connection are mocked throughout.
"""

import os
import ssl
import sys
import unittest
from unittest.mock import Mock, patch

from ldap3 import BASE, LEVEL, SUBTREE
from ldap3.core.exceptions import LDAPSocketOpenError

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ldap_catalog_sync.config import BindConfig, SearchOptions, TlsConfig
from ldap_catalog_sync.ldap_client import (
    LdapClient,
    LDAPConnectionError,
    LDAPQueryError,
    to_search_entry,
)
from ldap_catalog_sync.vendors import ActiveDirectoryVendor, DefaultLdapVendor

BIND = BindConfig(dn='cn=reader,dc=example,dc=com', secret='password123')


def response_item(dn, **attributes):
    return {'type': 'searchResEntry', 'dn': dn, 'attributes': attributes, 'raw_attributes': {}}


class TestLdapClientInit(unittest.TestCase):
    """Test cases for client initialization and TLS settings."""

    def test_ssl_detected_from_target(self):
        """Test that ldaps:// targets use SSL."""
        self.assertTrue(LdapClient('ldaps://ds.example.com:636', BIND).use_ssl)
        self.assertFalse(LdapClient('ldap://ds.example.com', BIND).use_ssl)

    def test_defaults(self):
        """Test defaults for optional arguments."""
        client = LdapClient('ldap://ds')

        self.assertEqual(client.bind, BindConfig())
        self.assertTrue(client.tls.reject_unauthorized)
        self.assertEqual(client.max_retries, 3)

    def test_no_tls_for_plain_ldap(self):
        """Test that plain LDAP has no TLS configuration."""
        self.assertIsNone(LdapClient('ldap://ds', BIND)._create_tls_config())

    @patch('ldap_catalog_sync.ldap_client.Tls')
    def test_tls_verification(self, mock_tls):
        """Test certificate verification settings."""
        LdapClient('ldaps://ds', BIND, TlsConfig(ca_cert_file='/etc/ca.pem'))._create_tls_config()
        mock_tls.assert_called_with(validate=ssl.CERT_REQUIRED, ca_certs_file='/etc/ca.pem')

        LdapClient('ldaps://ds', BIND, TlsConfig(reject_unauthorized=False))._create_tls_config()
        mock_tls.assert_called_with(validate=ssl.CERT_NONE)

    @patch('ldap_catalog_sync.ldap_client.Tls')
    def test_tls_error(self, mock_tls):
        """Test that TLS setup failures become connection errors."""
        mock_tls.side_effect = ValueError('bad ca file')

        with self.assertRaises(LDAPConnectionError):
            LdapClient('ldaps://ds', BIND)._create_tls_config()


@patch('ldap_catalog_sync.ldap_client.time.sleep')
@patch('ldap_catalog_sync.ldap_client.Connection')
@patch('ldap_catalog_sync.ldap_client.Server')
class TestLdapClientConnect(unittest.TestCase):
    """Test cases for connecting and binding."""

    def test_connect_success(self, mock_server, mock_connection, mock_sleep):
        """Test a successful bind on the first attempt."""
        mock_connection.return_value.bind.return_value = True

        client = LdapClient('ldap://ds', BIND)
        self.assertTrue(client.connect())

        mock_connection.assert_called_once_with(
            mock_server.return_value,
            user='cn=reader,dc=example,dc=com',
            password='password123',
            auto_bind=False,
            receive_timeout=10,
        )
        mock_sleep.assert_not_called()

    def test_anonymous_bind(self, mock_server, mock_connection, mock_sleep):
        """Test that an empty bind DN binds anonymously."""
        mock_connection.return_value.bind.return_value = True

        LdapClient('ldap://ds').connect()

        kwargs = mock_connection.call_args[1]
        self.assertIsNone(kwargs['user'])
        self.assertIsNone(kwargs['password'])

    def test_retry_then_success(self, mock_server, mock_connection, mock_sleep):
        """Test that a socket error is retried."""
        failing = Mock()
        failing.open.side_effect = LDAPSocketOpenError('refused')
        working = Mock()
        working.bind.return_value = True
        mock_connection.side_effect = [failing, working]

        client = LdapClient('ldap://ds', BIND, retry_wait=2)

        self.assertTrue(client.connect())
        self.assertEqual(mock_connection.call_count, 2)
        mock_sleep.assert_called_once_with(2)

    def test_bind_failure_exhausts_retries(self, mock_server, mock_connection, mock_sleep):
        """Test that repeated bind failures raise after max_retries."""
        mock_connection.return_value.bind.return_value = False
        mock_connection.return_value.result = {'result': 49, 'description': 'invalidCredentials'}

        client = LdapClient('ldap://ds', BIND, max_retries=3, retry_wait=0)

        with self.assertRaises(LDAPConnectionError) as ctx:
            client.connect()
        self.assertIn('after 3 attempts', str(ctx.exception))
        self.assertEqual(mock_connection.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    def test_unexpected_error_stops_retrying(self, mock_server, mock_connection, mock_sleep):
        """Test that non-LDAP errors are not retried."""
        mock_connection.return_value.open.side_effect = RuntimeError('boom')

        with self.assertRaises(LDAPConnectionError):
            LdapClient('ldap://ds', BIND).connect()
        self.assertEqual(mock_connection.call_count, 1)

    def test_create_connects(self, mock_server, mock_connection, mock_sleep):
        """Test that create returns a bound client."""
        mock_connection.return_value.bind.return_value = True
        logger = Mock()

        client = LdapClient.create(logger, 'ldap://ds', BIND)

        self.assertIs(client.logger, logger)
        self.assertIs(client.connection, mock_connection.return_value)

    def test_disconnect(self, mock_server, mock_connection, mock_sleep):
        """Test that disconnect unbinds once."""
        connection = mock_connection.return_value
        connection.bind.return_value = True
        client = LdapClient('ldap://ds', BIND)
        client.connect()

        client.disconnect()
        client.disconnect()

        connection.unbind.assert_called_once()
        self.assertIsNone(client.connection)

    def test_context_manager(self, mock_server, mock_connection, mock_sleep):
        """Test that leaving the context disconnects."""
        connection = mock_connection.return_value
        connection.bind.return_value = True

        with LdapClient('ldap://ds', BIND) as client:
            client.connect()
        connection.unbind.assert_called_once()


class TestLdapClientSearch(unittest.TestCase):
    """Test cases for searches on a connected client."""

    def setUp(self):
        """Set up a client with a mocked connection."""
        self.client = LdapClient('ldap://ds', BIND)
        self.connection = Mock()
        self.client.connection = self.connection
        self.client._connected = True
        self.connection.result = {'result': 0, 'description': 'success'}

    def test_search_requires_connection(self):
        """Test that searching without a connection fails."""
        with self.assertRaises(LDAPQueryError):
            LdapClient('ldap://ds').search('dc=x', SearchOptions())

    def test_invalid_scope(self):
        """Test that unknown scopes are rejected."""
        with self.assertRaises(LDAPQueryError):
            self.client.search('dc=x', SearchOptions(scope='everything'))

    def test_plain_search(self):
        """Test a non-paged search and response filtering."""
        self.connection.search.return_value = True
        self.connection.response = [
            response_item('uid=alice,dc=x', uid=['alice']),
            {'type': 'searchResRef', 'uri': ['ldap://elsewhere']},
        ]

        entries = self.client.search('dc=x', SearchOptions(scope='sub', filter='(uid=*)'))

        self.connection.search.assert_called_once_with(
            search_base='dc=x',
            search_filter='(uid=*)',
            search_scope=SUBTREE,
            attributes=['*', '+'],
        )
        self.assertEqual(len(entries), 1)
        self.assertEqual(entries[0].dn, 'uid=alice,dc=x')
        self.assertEqual(entries[0].get('UID'), ['alice'])

    def test_paged_search(self):
        """Test that paged searches use the standard paged_search extension."""
        paged_search = self.connection.extend.standard.paged_search
        paged_search.return_value = [response_item('cn=devs,dc=x', cn='devs')]

        entries = self.client.search('dc=x', SearchOptions(scope='one', paged=True, page_size=100,
                                                            attributes=('cn',)))

        paged_search.assert_called_once_with(
            search_base='dc=x',
            search_filter='(objectClass=*)',
            search_scope=LEVEL,
            attributes=['cn'],
            paged_size=100,
            generator=False,
        )
        self.connection.search.assert_not_called()
        self.assertEqual(entries[0].get('cn'), ['devs'])

    def test_empty_result(self):
        """Test that an empty successful search returns no entries."""
        self.connection.search.return_value = False
        self.connection.result = {'result': 0}
        self.connection.response = []

        self.assertEqual(self.client.search('dc=x', SearchOptions(scope='base')), [])
        self.assertEqual(self.connection.search.call_args[1]['search_scope'], BASE)

    def test_failed_search(self):
        """Test that error results raise LDAPQueryError."""
        self.connection.search.return_value = False
        self.connection.result = {'result': 32, 'description': 'noSuchObject'}

        with self.assertRaises(LDAPQueryError):
            self.client.search('ou=missing,dc=x', SearchOptions())

    def test_size_limit_exceeded(self):
        """Test that a result truncated by the server size limit is not accepted."""
        self.connection.search.return_value = True
        self.connection.result = {'result': 4, 'description': 'sizeLimitExceeded'}
        self.connection.response = [response_item('uid=alice,dc=x', uid=['alice'])]

        with self.assertRaises(LDAPQueryError) as ctx:
            self.client.search('dc=x', SearchOptions())
        self.assertIn('sizeLimitExceeded', str(ctx.exception))

    def test_paged_search_error_result(self):
        """Test that a paged search ending in an error result raises."""
        self.connection.extend.standard.paged_search.return_value = [response_item('cn=devs,dc=x', cn='devs')]
        self.connection.result = {'result': 3, 'description': 'timeLimitExceeded'}

        with self.assertRaises(LDAPQueryError):
            self.client.search('dc=x', SearchOptions(paged=True))

    def test_ldap_exception_wrapped(self):
        """Test that ldap3 exceptions become LDAPQueryError."""
        self.connection.search.side_effect = LDAPSocketOpenError('gone')

        with self.assertRaises(LDAPQueryError):
            self.client.search('dc=x', SearchOptions())


class TestSearchEntry(unittest.TestCase):
    """Test cases for response conversion."""

    def test_to_search_entry(self):
        """Test conversion of single values, bytes and raw attributes."""
        entry = to_search_entry({
            'dn': 'cn=a,dc=x',
            'attributes': {'cn': 'a', 'memberOf': ['cn=g1', 'cn=g2'], 'photo': b'\x89PNG'},
            'raw_attributes': {'objectGUID': [b'\x01\x02'], 'cn': [b'a']},
        })

        self.assertEqual(entry.get('cn'), ['a'])
        self.assertEqual(entry.get('memberof'), ['cn=g1', 'cn=g2'])
        self.assertEqual(entry.get_raw('objectguid'), [b'\x01\x02'])
        self.assertEqual(entry.get('missing'), [])
        self.assertEqual(len(entry.get('photo')), 1)

    def test_empty_item(self):
        """Test conversion of an item without attributes."""
        entry = to_search_entry({'dn': 'cn=a'})

        self.assertEqual(entry.attributes, {})
        self.assertEqual(entry.raw_attributes, {})


class TestVendorDetection(unittest.TestCase):
    """Test cases for get_vendor and get_root_dse."""

    def test_active_directory(self):
        """Test that AD is detected from its root DSE."""
        client = LdapClient('ldap://dc')
        client.server = Mock()
        client.server.info.other = {'forestFunctionality': ['7']}

        self.assertIsInstance(client.get_vendor(), ActiveDirectoryVendor)

    def test_default_vendor(self):
        """Test the fallback vendor."""
        client = LdapClient('ldap://ds')
        client.server = Mock()
        client.server.info.other = {'vendorName': ['OpenLDAP']}

        self.assertIsInstance(client.get_vendor(), DefaultLdapVendor)

    def test_no_server_info(self):
        """Test vendor detection before connecting."""
        self.assertEqual(LdapClient('ldap://ds').get_root_dse(), {})
        self.assertIsInstance(LdapClient('ldap://ds').get_vendor(), DefaultLdapVendor)


if __name__ == '__main__':
    unittest.main()
