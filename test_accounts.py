import os
import re
import shutil
import tempfile
import unittest
from datetime import timedelta
from unittest.mock import patch

import accounts
from models import (
    ConflictError,
    ExpiredCodeError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from constants import TCLE_VERSION, UserRole
from seed import seed_catalogue
from store import VetBalanceStore, iso, utc_now

class TestAccounts(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.store = VetBalanceStore(os.path.join(self.tmp, "test.db"))
        self.store.init_schema()
        seed_catalogue(self.store)

        # Bootstrap professor, the way an operator would
        self.store.upsert_profile("prof", "prof@vet.edu", "Dr. Prof")
        self.store.set_role("prof", UserRole.PROFESSOR)
        accounts.register_student(self.store, "stu", "stu@vet.edu", "Student")

    def tearDown(self):
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_01_access_key_format(self):
        key = accounts.generate_access_key()
        self.assertRegex(key, r"^[A-Z2-9]{4}-[A-Z2-9]{4}-[A-Z2-9]{4}-[A-Z2-9]{4}$")
        self.assertIsNone(re.search(r"[01OI]", key))

    def test_02_student_registration(self):
        self.assertEqual(self.store.get_role("stu"), UserRole.STUDENT)
        with self.assertRaises(ConflictError):
            accounts.register_student(self.store, "stu", "stu@vet.edu", "Student")

    def test_03_professor_registration_consumes_key(self):
        key = accounts.create_access_key(self.store, "prof", "Fall term")
        result = accounts.register_professor(self.store, "new-prof", "np@vet.edu", "New",
                                             key["access_key"].lower())
        self.assertEqual(result["role"], "professor")
        with self.assertRaises(ConflictError):
            accounts.register_professor(self.store, "other", "o@vet.edu", "Other", key["access_key"])

    def test_03b_key_consumed_once_under_concurrent_validation(self):
        key = accounts.create_access_key(self.store, "prof")
        # Both registrations read the key before either one consumes it
        stale = accounts.validate_access_key(self.store, key["access_key"])
        accounts.register_professor(self.store, "p1", "p1@vet.edu", "P1", key["access_key"])
        with patch("accounts.validate_access_key", return_value=stale):
            with self.assertRaises(ConflictError):
                accounts.register_professor(self.store, "p2", "p2@vet.edu", "P2", key["access_key"])
        self.assertEqual(self.store.get_role("p1"), UserRole.PROFESSOR)
        self.assertNotEqual(self.store.get_role("p2"), UserRole.PROFESSOR)

        with self.assertRaises(ConflictError):
            self.store.mark_access_key_used(key["id"], "p3")

    def test_04_access_key_rejections(self):
        with self.assertRaises(NotFoundError):
            accounts.validate_access_key(self.store, "NOPE-NOPE-NOPE-NOPE")

        inactive = accounts.create_access_key(self.store, "prof")
        accounts.deactivate_access_key(self.store, "prof", inactive["id"])
        with self.assertRaises(ConflictError):
            accounts.validate_access_key(self.store, inactive["access_key"])

        expired = self.store.insert_access_key("AAAA-BBBB-CCCC-DDDD", "prof", None,
                                               iso(utc_now() - timedelta(days=1)))
        with self.assertRaises(ExpiredCodeError):
            accounts.validate_access_key(self.store, expired["access_key"])

        with self.assertRaises(PermissionDeniedError):
            accounts.create_access_key(self.store, "stu")

    def test_05_roles(self):
        accounts.set_user_role(self.store, "prof", "stu", UserRole.PROFESSOR)
        self.assertEqual(self.store.get_role("stu"), UserRole.PROFESSOR)
        with self.assertRaises(ValidationError):
            accounts.set_user_role(self.store, "prof", "prof", UserRole.STUDENT)

    def test_06_classes(self):
        klass = accounts.create_class(self.store, "prof", "  Vet 101 ", period="Morning")
        self.assertEqual(klass["name"], "Vet 101")
        toggled = accounts.toggle_class(self.store, "prof", klass["id"])
        self.assertEqual(toggled["active"], 0)
        self.assertEqual(accounts.list_classes(self.store, "prof", active_only=True), [])

        with self.assertRaises(ValidationError):
            accounts.create_class(self.store, "prof", "   ")

        self.store.upsert_profile("prof2", "p2@vet.edu", "Other Prof")
        self.store.set_role("prof2", UserRole.PROFESSOR)
        with self.assertRaises(PermissionDeniedError):
            accounts.delete_class(self.store, "prof2", klass["id"])

    def test_07_roster(self):
        print("\nTEST 7: Roster by e-mail")
        klass = accounts.create_class(self.store, "prof", "Vet 101")
        link = accounts.add_student_by_email(self.store, "prof", " STU@vet.edu", klass["id"])
        self.assertEqual(link["student_id"], "stu")
        self.assertEqual(accounts.list_classes(self.store, "prof")[0]["student_count"], 1)

        with self.assertRaises(ConflictError):
            accounts.add_student_by_email(self.store, "prof", "stu@vet.edu")
        with self.assertRaises(NotFoundError):
            accounts.add_student_by_email(self.store, "prof", "ghost@vet.edu")
        with self.assertRaises(ValidationError):
            accounts.add_student_by_email(self.store, "prof", "prof@vet.edu")
        self.assertEqual(self.store.count_email_lookups("prof"), 4)

        accounts.deactivate_student(self.store, "prof", "stu")
        self.assertEqual(accounts.list_students(self.store, "prof"), [])
        relinked = accounts.add_student_by_email(self.store, "prof", "stu@vet.edu")
        self.assertEqual(relinked["active"], 1)

        moved = accounts.move_student(self.store, "prof", "stu", klass["id"])
        self.assertEqual(moved["class_id"], klass["id"])
        with self.assertRaises(NotFoundError):
            accounts.move_student(self.store, "prof", "ghost", None)

    def test_08_shared_cases(self):
        case = self.store.list_cases()[0]
        shared = accounts.share_case(self.store, "prof", case.id, "Homework 1", expires_in_days=7)
        self.assertEqual(len(shared["access_code"]), 8)

        opened = accounts.redeem_shared_case(self.store, "stu", shared["access_code"].lower())
        self.assertEqual(opened["case_id"], case.id)
        self.assertEqual(accounts.list_shared_cases(self.store, "prof")[0]["access_count"], 1)

        accounts.deactivate_shared_case(self.store, "prof", shared["id"])
        with self.assertRaises(ConflictError):
            accounts.redeem_shared_case(self.store, "stu", shared["access_code"])
        with self.assertRaises(NotFoundError):
            accounts.redeem_shared_case(self.store, "stu", "ZZZZZZZZ")
        with self.assertRaises(ValidationError):
            accounts.share_case(self.store, "prof", case.id, "Bad", expires_in_days=0)

    def test_09_expired_share_code(self):
        case = self.store.list_cases()[0]
        self.store.insert_shared_case(case.id, "prof", "EXPIRED2", "Old", None,
                                      iso(utc_now() - timedelta(hours=1)))
        with self.assertRaises(ExpiredCodeError):
            accounts.redeem_shared_case(self.store, "stu", "expired2")

    def test_10_tcle_consent(self):
        self.assertFalse(accounts.consent_status(self.store, "stu")["has_consent"])
        with self.assertRaises(PermissionDeniedError):
            accounts.require_consent(self.store, "stu")
        accounts.require_consent(self.store, "prof")

        declined = accounts.record_consent(self.store, "stu", False, "Mozilla/5.0")
        self.assertIs(declined["accepted"], False)
        with self.assertRaises(PermissionDeniedError):
            accounts.require_consent(self.store, "stu")

        accepted = accounts.record_consent(self.store, "stu", True, "Mozilla/5.0")
        self.assertTrue(accepted["has_consent"])
        accounts.require_consent(self.store, "stu")
        self.assertEqual(self.store.latest_consent("stu", TCLE_VERSION)["user_agent"], "Mozilla/5.0")

        # A new term version asks again
        self.store.record_consent("other", "0.9", True, None)
        self.assertFalse(accounts.consent_status(self.store, "other")["has_consent"])

    def test_11_roster_consents_pending_first(self):
        accounts.register_student(self.store, "ana", "ana@vet.edu", "Ana")
        accounts.register_student(self.store, "zoe", "zoe@vet.edu", "Zoe")
        for email in ("stu@vet.edu", "ana@vet.edu", "zoe@vet.edu"):
            accounts.add_student_by_email(self.store, "prof", email)
        accounts.record_consent(self.store, "ana", True)
        accounts.record_consent(self.store, "stu", False)

        rows = accounts.roster_consents(self.store, "prof")
        self.assertEqual([(r["student_id"], r["accepted"]) for r in rows],
                         [("zoe", None), ("ana", True), ("stu", False)])
        with self.assertRaises(PermissionDeniedError):
            accounts.roster_consents(self.store, "stu")

if __name__ == '__main__':
    unittest.main()
