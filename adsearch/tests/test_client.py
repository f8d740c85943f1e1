import unittest

import ldap

from adsearch.client import AuthenticationResult, DirectoryClient, FindResult
from adsearch.conf import BaseDNs, DirectoryConfig
from adsearch.exceptions import DirectoryError, InvalidCredentials, ProtocolError
from adsearch.limiter import ConcurrencyLimiter
from adsearch.models import DirectoryEntry, Group, User
from adsearch.observers import DirectoryObserver
from adsearch.options import SearchOptions
from adsearch.rootdse import RootDSE
from adsearch.search import SHOW_DELETED_OID
from adsearch.sync import SyncDirectoryClient

from .fakes import BASEDN, URL, FakeDirectory

PEOPLE = f"OU=People,{BASEDN}"
GROUPS = f"OU=Groups,{BASEDN}"
DELETED = f"CN=Deleted Objects,{BASEDN}"


class Recorder(DirectoryObserver):
    def __init__(self):
        self.events = []

    def on_user(self, user):
        self.events.append(("user", user.dn))

    def on_users(self, users):
        self.events.append(("users", len(users)))

    def on_group(self, group):
        self.events.append(("group", group.dn))

    def on_groups(self, groups):
        self.events.append(("groups", len(groups)))

    def on_other(self, entry):
        self.events.append(("other", entry.dn))

    def on_deleted_entry(self, entry):
        self.events.append(("deleted_entry", entry["dn"]))

    def on_deleted(self, entries):
        self.events.append(("deleted", len(entries)))

    def on_done(self):
        self.events.append(("done",))

    def on_error(self, error):
        self.events.append(("error", type(error).__name__))

    def names(self):
        return [event[0] for event in self.events]


def build_directory():
    directory = FakeDirectory()
    directory.add_user(f"CN=Alice Smith,{PEOPLE}", "alice", mail="alice@example.com")
    directory.add_user(f"CN=Bob Jones,{PEOPLE}", "bob", mail="bob@example.com")
    directory.add_group(f"CN=Engineering,{GROUPS}", [f"CN=Alice Smith,{PEOPLE}"])
    directory.add_group(
        f"CN=Staff,{GROUPS}",
        [f"CN=Engineering,{GROUPS}", f"CN=Bob Jones,{PEOPLE}"],
        description="Everyone",
    )
    directory.add_other(f"CN=Builtin,{BASEDN}")
    directory.default.root_dse = {
        "defaultNamingContext": [BASEDN.encode()],
        "namingContexts": [BASEDN.encode(), f"CN=Configuration,{BASEDN}".encode()],
        "forestFunctionality": [b"7"],
    }
    directory.default.passwords[f"CN=Alice Smith,{PEOPLE}"] = "correct horse"
    return directory


class ClientTestCase(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        ConcurrencyLimiter.clear()
        self.directory = build_directory()
        self.config = DirectoryConfig(
            url=URL,
            basedn=BASEDN,
            user="CN=svc,DC=example,DC=com",
            password="secret",
            poll_interval=0,
        )
        self.client = DirectoryClient(self.config, connection_class=self.directory.connect)
        self.recorder = Recorder()
        self.unsubscribe = self.client.subscribe(self.recorder)

    def tearDown(self):
        ConcurrencyLimiter.clear()


class TestUsers(ClientTestCase):
    async def test_find_user_by_sam_account_name(self):
        user = await self.client.find_user("alice")
        self.assertIsInstance(user, User)
        self.assertEqual(user.dn, f"CN=Alice Smith,{PEOPLE}")
        self.assertEqual(user.mail, "alice@example.com")
        self.assertIsNone(user.groups)
        self.assertEqual(self.recorder.events, [("user", user.dn)])

    async def test_find_user_by_upn_and_dn(self):
        by_upn = await self.client.find_user("bob@example.com")
        by_dn = await self.client.find_user(f"CN=Bob Jones,{PEOPLE}")
        self.assertEqual(by_upn, by_dn)

    async def test_find_user_not_found(self):
        with self.assertLogs("adsearch", level="WARNING"):
            self.assertIsNone(await self.client.find_user("nobody"))
        self.assertEqual(self.recorder.events, [])

    async def test_find_user_filter_overrides_identifier(self):
        user = await self.client.find_user(
            "alice", SearchOptions(filter="(sAMAccountName=bob)")
        )
        self.assertEqual(user.sAMAccountName, "bob")
        self.assertEqual(self.directory.searches[0]["filter"], "(sAMAccountName=bob)")

    async def test_find_user_attributes(self):
        user = await self.client.find_user("alice", SearchOptions(attributes=["mail"]))
        self.assertEqual(dict(user), {"dn": f"CN=Alice Smith,{PEOPLE}", "mail": "alice@example.com"})
        self.assertEqual(self.directory.searches[0]["attrlist"], ["mail", "cn"])

    async def test_find_user_with_membership(self):
        user = await self.client.find_user(
            "alice", SearchOptions(include_membership=["user"])
        )
        self.assertEqual([g.cn for g in user.groups], ["Engineering", "Staff"])
        self.assertTrue(user.is_member_of("staff"))

    async def test_find_user_searches_user_base(self):
        config = self.config.with_(basedns=BaseDNs(user=PEOPLE))
        client = DirectoryClient(config, connection_class=self.directory.connect)
        await client.find_user("alice")
        self.assertEqual(self.directory.searches[0]["base"], PEOPLE)

    async def test_find_users(self):
        users = await self.client.find_users()
        self.assertEqual(sorted(u.sAMAccountName for u in users), ["alice", "bob"])
        self.assertEqual(self.recorder.names(), ["user", "user", "users"])

    async def test_find_users_with_filter(self):
        users = await self.client.find_users(SearchOptions(filter="mail=*"))
        self.assertTrue(self.directory.searches[0]["filter"].endswith("(mail=*))"))
        self.assertEqual(len(users), 2)

    async def test_user_exists(self):
        self.assertTrue(await self.client.user_exists("alice"))
        self.assertFalse(await self.client.user_exists("nobody"))


class TestGroups(ClientTestCase):
    async def test_find_group(self):
        group = await self.client.find_group("Staff")
        self.assertIsInstance(group, Group)
        self.assertEqual(dict(group), {"dn": f"CN=Staff,{GROUPS}", "cn": "Staff", "description": "Everyone"})
        self.assertEqual(self.recorder.events, [("group", group.dn)])

    async def test_find_group_with_membership(self):
        group = await self.client.find_group(
            "Engineering", SearchOptions(include_membership=["group"])
        )
        self.assertEqual([g.cn for g in group.groups], ["Staff"])

    async def test_find_group_not_found(self):
        self.assertIsNone(await self.client.find_group("Nope"))

    async def test_find_groups(self):
        groups = await self.client.find_groups()
        self.assertEqual(sorted(g.cn for g in groups), ["Engineering", "Staff"])
        self.assertEqual(self.recorder.names()[-1], "groups")

    async def test_group_exists(self):
        self.assertTrue(await self.client.group_exists("Engineering"))
        self.assertFalse(await self.client.group_exists("Nope"))


class TestFind(ClientTestCase):
    async def test_classifies_results(self):
        found = await self.client.find()
        self.assertIsInstance(found, FindResult)
        self.assertEqual(sorted(u.cn for u in found.users), ["Alice Smith", "Bob Jones"])
        self.assertEqual(sorted(g.cn for g in found.groups), ["Engineering", "Staff"])
        self.assertEqual([o.cn for o in found.other], ["Builtin"])
        self.assertIsInstance(found.other[0], DirectoryEntry)
        self.assertEqual(len(found), 5)
        self.assertEqual(sorted(set(self.recorder.names())), ["group", "other", "user"])

    async def test_membership_per_kind(self):
        found = await self.client.find(SearchOptions(include_membership=["group"]))
        self.assertTrue(all(g.groups is not None for g in found.groups))
        self.assertTrue(all(u.groups is None for u in found.users))

    async def test_nothing_found(self):
        found = await self.client.find(SearchOptions(filter="(cn=nothing-here)"))
        self.assertEqual(len(found), 0)
        self.assertEqual(self.recorder.events, [("done",)])


class TestDeletedObjects(ClientTestCase):
    def setUp(self):
        super().setUp()
        self.tombstone = self.directory.add_other(
            f"CN=Carol\\0ADEL:1234,{DELETED}",
            isDeleted="TRUE",
            lastKnownParent=PEOPLE,
        )

    async def test_discovers_container_from_root_dse(self):
        deleted = await self.client.find_deleted_objects()
        self.assertEqual([entry["dn"] for entry in deleted], [self.tombstone])
        self.assertEqual(deleted[0]["isDeleted"], "TRUE")
        search = self.directory.searches[-1]
        self.assertEqual(search["base"], DELETED)
        self.assertEqual(search["scope"], ldap.SCOPE_ONELEVEL)
        self.assertIn(SHOW_DELETED_OID, search["controls"])
        self.assertEqual(self.recorder.events, [("deleted_entry", self.tombstone), ("deleted", 1)])

    async def test_explicit_base(self):
        await self.client.find_deleted_objects(SearchOptions(basedn=DELETED, attributes=["cn"]))
        self.assertEqual(len(self.directory.searches), 1)
        self.assertEqual(self.directory.searches[0]["attrlist"], ["cn"])

    async def test_nothing_deleted(self):
        self.directory.default.entries.pop(self.tombstone)
        self.assertEqual(await self.client.find_deleted_objects(), [])
        self.assertEqual(self.recorder.events, [("done",)])

    async def test_root_dse_without_naming_context(self):
        self.directory.default.root_dse = {"vendorName": [b"Example"]}
        with self.assertRaises(DirectoryError):
            await self.client.find_deleted_objects()


class TestMembership(ClientTestCase):
    async def test_membership_for_user(self):
        groups = await self.client.get_group_membership_for_user("alice")
        self.assertEqual([g.cn for g in groups], ["Engineering", "Staff"])
        self.assertEqual(self.recorder.names(), ["group", "group", "groups"])

    async def test_membership_for_user_by_dn(self):
        groups = await self.client.get_group_membership_for_user(f"CN=Bob Jones,{PEOPLE}")
        self.assertEqual([g.cn for g in groups], ["Staff"])

    async def test_membership_for_unknown_user(self):
        with self.assertLogs("adsearch", level="WARNING"):
            self.assertEqual(await self.client.get_group_membership_for_user("nobody"), [])

    async def test_membership_for_group(self):
        groups = await self.client.get_group_membership_for_group("Engineering")
        self.assertEqual([g.cn for g in groups], ["Staff"])
        self.assertEqual(await self.client.get_group_membership_for_group("Staff"), [])
        self.assertEqual(await self.client.get_group_membership_for_group("Nope"), [])

    async def test_is_user_member_of(self):
        self.assertTrue(await self.client.is_user_member_of("alice", "Engineering"))
        self.assertTrue(await self.client.is_user_member_of("alice", "staff"))
        self.assertTrue(await self.client.is_user_member_of("alice", f"cn=staff,{GROUPS}".lower()))
        self.assertFalse(await self.client.is_user_member_of("bob", "Engineering"))
        self.assertFalse(await self.client.is_user_member_of("nobody", "Staff"))

    async def test_users_for_group(self):
        users = await self.client.get_users_for_group("Staff")
        self.assertEqual(sorted(u.sAMAccountName for u in users), ["alice", "bob"])
        self.assertEqual(self.recorder.names()[-1], "users")

    async def test_distinguished_names(self):
        self.assertEqual(await self.client.get_user_dn("alice"), f"CN=Alice Smith,{PEOPLE}")
        self.assertEqual(await self.client.get_group_dn("Staff"), f"CN=Staff,{GROUPS}")
        self.assertIsNone(await self.client.get_user_dn("nobody"))
        dns = await self.client.get_distinguished_names("(cn=Staff)")
        self.assertEqual(dns, [f"CN=Staff,{GROUPS}"])


class TestAuthenticate(ClientTestCase):
    async def test_success(self):
        result = await self.client.authenticate(f"CN=Alice Smith,{PEOPLE}", "correct horse")
        self.assertIsInstance(result, AuthenticationResult)
        self.assertTrue(result)
        self.assertIsNone(result.error)
        self.assertEqual(self.directory.binds, [(URL, f"CN=Alice Smith,{PEOPLE}")])
        self.assertEqual(self.directory.open_connections, [])

    async def test_wrong_password(self):
        with self.assertLogs("adsearch", level="WARNING") as logs:
            result = await self.client.authenticate(f"CN=Alice Smith,{PEOPLE}", "wrong")
        self.assertFalse(result)
        self.assertIsInstance(result.error, InvalidCredentials)
        self.assertEqual(result.error.code, 49)
        self.assertNotIn("wrong", "\n".join(logs.output))
        self.assertEqual(self.recorder.events, [("error", "InvalidCredentials")])
        self.assertEqual(self.directory.open_connections, [])

    async def test_empty_credentials_never_reach_the_server(self):
        for username, password in [("", "x"), ("alice", ""), (None, None)]:
            result = await self.client.authenticate(username, password)
            self.assertFalse(result)
            self.assertEqual(result.error.code, 49)
        self.assertEqual(self.directory.connections, [])


class TestRootDSE(ClientTestCase):
    async def test_reads_root_dse_anonymously(self):
        root = await self.client.get_root_dse()
        self.assertIsInstance(root, RootDSE)
        self.assertEqual(root.default_naming_context, BASEDN)
        self.assertEqual(len(root.naming_contexts), 2)
        self.assertEqual(root.flavor, "active_directory")
        self.assertEqual(root.deleted_objects_dn, DELETED)
        self.assertEqual(self.directory.binds, [(URL, None)])
        search = self.directory.searches[0]
        self.assertEqual((search["base"], search["scope"]), ("", ldap.SCOPE_BASE))
        self.assertIsNone(search["attrlist"])
        self.assertIsNone(search["page_size"])
        self.assertEqual(self.directory.open_connections, [])

    async def test_selected_attributes(self):
        root = await self.client.get_root_dse(attributes=["defaultNamingContext"])
        self.assertEqual(root.attributes, {"defaultNamingContext": BASEDN})

    async def test_other_server(self):
        other = "ldap://dc9.example.com"
        self.directory.server(other).root_dse = {"vendorName": [b"OpenLDAP Foundation"]}
        root = await self.client.get_root_dse(url=other)
        self.assertEqual(root.flavor, "openldap")
        self.assertIsNone(root.default_naming_context)

    async def test_failure(self):
        self.directory.default.search_errors.append(
            ldap.UNWILLING_TO_PERFORM({"result": 53, "desc": "Server is unwilling to perform"})
        )
        with self.assertRaises(ProtocolError):
            await self.client.get_root_dse()
        self.assertEqual(self.recorder.names(), ["error"])
        self.assertEqual(self.directory.open_connections, [])


class TestObservers(ClientTestCase):
    async def test_search_errors_are_reported(self):
        self.directory.default.search_errors.append(
            ldap.NO_SUCH_OBJECT({"result": 32, "desc": "No such object"})
        )
        with self.assertRaises(ProtocolError):
            await self.client.find_user("alice")
        self.assertEqual(self.recorder.events, [("error", "ProtocolError")])

    async def test_failing_observer_does_not_break_the_operation(self):
        class Broken(DirectoryObserver):
            def on_user(self, user):
                msg = "observer bug"
                raise RuntimeError(msg)

        self.client.subscribe(Broken())
        with self.assertLogs("adsearch", level="ERROR"):
            user = await self.client.find_user("alice")
        self.assertEqual(user.sAMAccountName, "alice")
        self.assertEqual(self.recorder.names(), ["user"])

    async def test_unsubscribe(self):
        self.unsubscribe()
        await self.client.find_user("alice")
        self.assertEqual(self.recorder.events, [])
        self.assertEqual(len(self.client.observers), 0)

    def test_unknown_event(self):
        with self.assertRaises(ValueError):
            self.client.observers.notify("nonsense")


class TestSyncDirectoryClient(unittest.TestCase):
    def setUp(self):
        ConcurrencyLimiter.clear()
        self.directory = build_directory()
        config = DirectoryConfig(url=URL, basedn=BASEDN, poll_interval=0)
        self.client = SyncDirectoryClient(
            DirectoryClient(config, connection_class=self.directory.connect)
        )

    def tearDown(self):
        ConcurrencyLimiter.clear()

    def test_blocking_calls(self):
        self.assertEqual(self.client.find_user("alice").sAMAccountName, "alice")
        self.assertTrue(self.client.is_user_member_of("alice", "Staff"))
        self.assertFalse(self.client.authenticate(f"CN=Alice Smith,{PEOPLE}", "wrong"))

    def test_unknown_attribute(self):
        with self.assertRaises(AttributeError):
            self.client.delete_user  # noqa: B018
