import threading
import unittest
from unittest.mock import Mock

import ldap

from adsearch.conf import DirectoryConfig
from adsearch.connection import DirectoryConnection

from .fakes import URL


class TestClose(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.connection = DirectoryConnection(DirectoryConfig(url=URL, poll_interval=0))
        self.ldap_object = Mock()
        self.connection._ldap = self.ldap_object

    async def test_unbind_runs_in_executor(self):
        threads = []
        self.ldap_object.unbind_s.side_effect = lambda: threads.append(threading.get_ident())
        await self.connection.close()
        self.assertEqual(len(threads), 1)
        self.assertNotEqual(threads[0], threading.get_ident())
        self.assertFalse(self.connection.is_open)

    async def test_unbind_failure_still_closes(self):
        self.ldap_object.unbind_s.side_effect = ldap.SERVER_DOWN({"result": -1, "desc": "Can't contact LDAP server"})
        await self.connection.close()
        self.assertFalse(self.connection.is_open)

    async def test_close_twice(self):
        await self.connection.close()
        await self.connection.close()
        self.ldap_object.unbind_s.assert_called_once_with()
