from __future__ import annotations

import unittest
from decimal import Decimal

from borrowpal.utils.money import from_minor, minor_to_json, to_minor


class MoneyMinorTestCase(unittest.TestCase):
    def test_to_minor_half_up(self):
        self.assertEqual(to_minor("12.50"), 1250)
        self.assertEqual(to_minor(7), 700)
        self.assertEqual(to_minor("0.005"), 1)  # half-up
        self.assertEqual(to_minor(Decimal("19.994")), 1999)

    def test_to_minor_rejects_junk(self):
        for bad in (None, True, "", "abc", "NaN", "Infinity"):
            with self.assertRaises(ValueError):
                to_minor(bad)

    def test_json_rendering(self):
        self.assertEqual(minor_to_json(1600), "16.00")
        self.assertEqual(minor_to_json(5), "0.05")
        self.assertIsNone(minor_to_json(None))
        self.assertEqual(from_minor(123), Decimal("1.23"))


if __name__ == "__main__":
    unittest.main()
