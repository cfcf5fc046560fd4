import unittest

from devicelab.diagnostics.catalog import TestCatalog
from devicelab.diagnostics.definitions import DEFINITIONS
from devicelab.diagnostics.models import ParameterKind, ParameterSpec, TestDefinition
from devicelab.errors import NotFoundError, ParameterValidationError


class CatalogLookupTests(unittest.TestCase):
    def setUp(self):
        self.catalog = TestCatalog()

    def test_ids_are_unique_and_all_listed(self):
        ids = [definition.id for definition in self.catalog.list_all()]
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(len(ids), len(DEFINITIONS))

    def test_filter_by_category(self):
        modem = {definition.id for definition in self.catalog.list_by_category("modem")}
        self.assertEqual(modem, {"atCommands", "simCard"})
        self.assertEqual(len(self.catalog.list_by_category("all")), len(DEFINITIONS))
        self.assertEqual(self.catalog.list_by_category("nope"), [])

    def test_unknown_test_raises_not_found(self):
        with self.assertRaises(NotFoundError):
            self.catalog.get("flux-capacitor")
        self.assertNotIn("flux-capacitor", self.catalog)

    def test_categories_group_tests_with_metadata(self):
        categories = self.catalog.categories()
        self.assertEqual(categories["gpio"]["name"], "GPIO")
        self.assertEqual(
            [test["id"] for test in categories["gpio"]["tests"]], ["led", "gpioLoopback"]
        )

    def test_full_system_references_existing_tests(self):
        full = self.catalog.get("fullSystem")
        self.assertTrue(full.is_composite)
        for component in full.components:
            self.assertIn(component, self.catalog)

    def test_rejects_duplicate_ids_and_dangling_components(self):
        single = TestDefinition(id="a", name="A", category="x")
        with self.assertRaises(ValueError):
            TestCatalog([single, single])
        with self.assertRaises(ValueError):
            TestCatalog([TestDefinition(id="b", name="B", category="x", components=("missing",))])


class ParameterValidationTests(unittest.TestCase):
    def setUp(self):
        self.catalog = TestCatalog()

    def test_defaults_fill_missing_parameters(self):
        self.assertEqual(
            self.catalog.validate("led", {}), {"pin": 2, "duration": 1000, "pattern": "blink"}
        )

    def test_numeric_strings_are_coerced(self):
        params = self.catalog.validate("led", {"pin": "5", "duration": "250"})
        self.assertEqual(params["pin"], 5)
        self.assertIsInstance(params["duration"], int)

    def test_out_of_range_and_bad_enum_reported_together(self):
        with self.assertRaises(ParameterValidationError) as caught:
            self.catalog.validate("led", {"duration": 50, "pattern": "strobe", "pin": "abc"})
        errors = caught.exception.errors
        self.assertEqual(len(errors), 3)
        self.assertTrue(any(error.startswith("duration") for error in errors))
        self.assertTrue(any(error.startswith("pattern") for error in errors))
        self.assertTrue(any(error.startswith("pin") for error in errors))

    def test_integer_parameters_reject_fractions(self):
        with self.assertRaises(ParameterValidationError):
            self.catalog.validate("led", {"pin": 2.5})

    def test_huge_numbers_are_rejected_not_raised(self):
        with self.assertRaises(ParameterValidationError) as caught:
            self.catalog.validate("led", {"pin": 10**400, "duration": "1e999"})
        self.assertEqual(
            sorted(caught.exception.errors),
            ["duration must be a finite number", "pin must be a finite number"],
        )

    def test_booleans_are_not_numbers(self):
        with self.assertRaises(ParameterValidationError):
            self.catalog.validate("battery", {"samples": True})

    def test_float_parameters_keep_fractions(self):
        self.assertEqual(self.catalog.validate("battery", {"minVoltage": "3.45"})["minVoltage"], 3.45)

    def test_pattern_is_enforced(self):
        with self.assertRaises(ParameterValidationError):
            self.catalog.validate("gpioLoopback", {"testPattern": "0120"})
        self.assertEqual(
            self.catalog.validate("gpioLoopback", {"testPattern": "1100"})["testPattern"], "1100"
        )

    def test_required_parameter_missing(self):
        with self.assertRaises(ParameterValidationError) as caught:
            self.catalog.validate("wifi", {"ssid": "  "})
        self.assertEqual(caught.exception.errors, ["ssid is required"])

    def test_unknown_parameters_are_dropped(self):
        params = self.catalog.validate("sdCard", {"fileSize": 10, "bogus": 1})
        self.assertEqual(params, {"fileSize": 10})

    def test_validation_of_unknown_test(self):
        with self.assertRaises(NotFoundError):
            self.catalog.validate("nope", {})

    def test_secret_defaults_are_hidden_from_catalog_output(self):
        spec = ParameterSpec("token", ParameterKind.SECRET, default="hunter2")
        self.assertNotIn("default", spec.to_dict())


if __name__ == "__main__":
    unittest.main()
