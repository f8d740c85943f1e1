import unittest

from adsearch.entries import (
    RangedAttribute,
    as_list,
    classify,
    decode_entry,
    merge_ranges,
    project,
)
from adsearch.models import DirectoryEntry, Group, User, make_record

GROUP_CATEGORY = "CN=Group,CN=Schema,CN=Configuration,DC=example,DC=com"
USER_CATEGORY = "CN=Person,CN=Schema,CN=Configuration,DC=example,DC=com"


class TestDecodeEntry(unittest.TestCase):
    def test_decodes_values(self):
        entry = decode_entry(
            "CN=Alice,DC=example,DC=com",
            {
                "cn": [b"Alice"],
                "memberOf": [b"CN=A,DC=x", b"CN=B,DC=x"],
                "objectGUID": [b"\xff\xfe\x00\x01"],
            },
        )
        self.assertEqual(entry["dn"], "CN=Alice,DC=example,DC=com")
        self.assertEqual(entry["cn"], "Alice")
        self.assertEqual(entry["memberOf"], ["CN=A,DC=x", "CN=B,DC=x"])
        self.assertEqual(entry["objectGUID"], b"\xff\xfe\x00\x01")

    def test_as_list(self):
        self.assertEqual(as_list(None), [])
        self.assertEqual(as_list("x"), ["x"])
        self.assertEqual(as_list(["x", "y"]), ["x", "y"])


class TestClassify(unittest.TestCase):
    def test_group_markers(self):
        self.assertEqual(classify({"dn": "x", "groupType": "-2147483646"}), "group")
        self.assertEqual(classify({"dn": "x", "objectCategory": GROUP_CATEGORY}), "group")
        self.assertEqual(classify({"dn": "x", "objectClass": ["top", "Group"]}), "group")

    def test_user_markers(self):
        self.assertEqual(classify({"dn": "x", "userPrincipalName": "a@b"}), "user")
        self.assertEqual(classify({"dn": "x", "objectCategory": USER_CATEGORY}), "user")
        self.assertEqual(classify({"dn": "x", "objectClass": ["top", "user"]}), "user")

    def test_group_wins_over_user(self):
        entry = {"dn": "x", "groupType": "2", "userPrincipalName": "a@b"}
        self.assertEqual(classify(entry), "group")

    def test_everything_else(self):
        self.assertEqual(classify({"dn": "x", "objectClass": ["top", "container"]}), "other")
        self.assertEqual(classify({"dn": "x"}), "other")


class TestProject(unittest.TestCase):
    def setUp(self):
        self.entry = {"dn": "CN=A,DC=x", "cn": "A", "mail": "a@x", "member": ["m"]}

    def test_keeps_wanted_and_dn(self):
        self.assertEqual(project(self.entry, ["mail"]), {"dn": "CN=A,DC=x", "mail": "a@x"})

    def test_all_attributes(self):
        self.assertEqual(project(self.entry, ["*"]), self.entry)
        self.assertEqual(project(self.entry, []), self.entry)
        self.assertEqual(project(self.entry, None), self.entry)


class TestRanges(unittest.TestCase):
    def test_parse(self):
        ranged = RangedAttribute.parse("member;range=0-1499")
        self.assertEqual(ranged, RangedAttribute("member", 0, 1499))
        self.assertFalse(ranged.complete)
        self.assertEqual(str(ranged.next()), "member;range=1500-*")
        self.assertIsNone(RangedAttribute.parse("member"))

    def test_final_slice(self):
        ranged = RangedAttribute.parse("member;range=1500-*")
        self.assertTrue(ranged.complete)
        self.assertIsNone(ranged.next())

    def test_merge_ranges(self):
        entry = {"dn": "x", "member;range=0-1": ["a", "b"], "cn": "g"}
        pending = merge_ranges(entry)
        self.assertEqual(entry, {"dn": "x", "member": ["a", "b"], "cn": "g"})
        self.assertEqual([str(p) for p in pending], ["member;range=2-*"])

    def test_merge_final_range_appends(self):
        entry = {"dn": "x", "member": ["a", "b"], "member;range=2-*": "c"}
        self.assertEqual(merge_ranges(entry), [])
        self.assertEqual(entry["member"], ["a", "b", "c"])


class TestRecords(unittest.TestCase):
    def test_record_access(self):
        user = User({"dn": "CN=A,DC=x", "cn": "A", "mail": "a@x"})
        self.assertEqual(user["mail"], "a@x")
        self.assertEqual(user.mail, "a@x")
        self.assertEqual(user.dn, "CN=A,DC=x")
        self.assertEqual(dict(user), {"dn": "CN=A,DC=x", "cn": "A", "mail": "a@x"})
        with self.assertRaises(AttributeError):
            user.telephoneNumber  # noqa: B018

    def test_records_are_read_only_except_groups(self):
        user = User({"dn": "CN=A,DC=x"})
        with self.assertRaises(AttributeError):
            user.mail = "x"
        user.groups = [Group({"dn": "CN=G,DC=x", "cn": "G"})]
        self.assertTrue(user.is_member_of("g"))
        self.assertTrue(user.is_member_of("cn=g,dc=x"))
        self.assertFalse(user.is_member_of("H"))
        self.assertEqual(
            user.to_dict(),
            {"dn": "CN=A,DC=x", "groups": [{"dn": "CN=G,DC=x", "cn": "G"}]},
        )

    def test_is_member_of_before_resolution(self):
        self.assertFalse(User({"dn": "CN=A,DC=x"}).is_member_of("G"))

    def test_make_record(self):
        self.assertIsInstance(make_record({"dn": "x", "groupType": "2"}), Group)
        self.assertIsInstance(make_record({"dn": "x", "userPrincipalName": "a"}), User)
        other = make_record({"dn": "x"})
        self.assertIsInstance(other, DirectoryEntry)
        self.assertEqual(other.kind, "other")
