from __future__ import annotations

import unittest

from memory.categorizer import CATEGORY_RULES
from memory.categorizer import CategoryRule
from memory.categorizer import categorize
from memory.categorizer import explain_category


class CategorizerTests(unittest.TestCase):
    def test_food_preference_beats_hobbies(self):
        self.assertEqual(explain_category("User loves pizza"), ("preferences", "food_preference"))

    def test_keyword_priority(self):
        self.assertEqual(categorize("User works as a nurse"), "professional")
        self.assertEqual(categorize("User's email is bri@example.com"), "contact")
        self.assertEqual(categorize("User has a dog named Max"), "personal")

    def test_unmatched_text_is_other(self):
        self.assertEqual(explain_category("xyzzy qwerty"), ("other", "default"))
        self.assertEqual(categorize(""), "other")

    def test_rules_are_ordered_and_replaceable(self):
        self.assertEqual([r.name for r in CATEGORY_RULES][0], "food_preference")
        rules = (CategoryRule("always_hobbies", lambda lowered: "hobbies"),) + CATEGORY_RULES
        self.assertEqual(categorize("User works as a nurse", rules), "hobbies")

    def test_deterministic(self):
        text = "User enjoys hiking on weekends"
        self.assertEqual(categorize(text), categorize(text))


if __name__ == "__main__":
    unittest.main()
