import unittest

from vegsync.utils import is_numeric, to_number


class NumberHelperTests(unittest.TestCase):
    def test_numeric_strings_and_numbers(self):
        self.assertTrue(is_numeric("12.5"))
        self.assertTrue(is_numeric(" 3 "))
        self.assertTrue(is_numeric(0))
        self.assertEqual(to_number("12.5"), 12.5)
        self.assertEqual(to_number(7), 7.0)

    def test_non_finite_values_are_not_numeric(self):
        for value in ("inf", "-Infinity", "1e999", "nan", float("inf"), float("-inf"), float("nan"), 10 ** 400):
            self.assertFalse(is_numeric(value), value)
            self.assertEqual(to_number(value), 0.0)

    def test_junk_falls_back_to_default(self):
        for value in (None, True, "", "abc", [1], {"a": 1}):
            self.assertFalse(is_numeric(value), value)
        self.assertEqual(to_number("abc", default=-1), -1)


if __name__ == "__main__":
    unittest.main()
