import json
import os
import tempfile
import unittest

from labor_backend.catalog import QuestionCatalog, QuizQuestion, load_catalog


class CatalogTests(unittest.TestCase):
    def test_default_catalog_has_eleven_questions(self):
        catalog = load_catalog()
        self.assertEqual(len(catalog), 11)
        self.assertIn("ÖNORM EN 12697-8", catalog)
        self.assertEqual(
            catalog.get("Gesteinsraum").answer,
            "Sie zeigt an, dass gesetzliche Vorschriften eingehalten wurden",
        )
        self.assertTrue(all(question.points == 10 for question in catalog))

    def test_catalog_is_read_only(self):
        catalog = load_catalog()
        with self.assertRaises(TypeError):
            catalog._questions["neu"] = QuizQuestion("neu", "?", "!")

    def test_duplicate_keys_are_rejected(self):
        with self.assertRaises(ValueError):
            QuestionCatalog([QuizQuestion("a", "?", "x"), QuizQuestion("a", "?", "y")])

    def test_load_from_json_file(self):
        entries = [
            {"raum": "A", "frage": "Frage A?", "antwort": "a"},
            {"raum": "B", "frage": "Frage B?", "antwort": "b", "punkte": 5},
        ]
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "fragen.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(entries, f)
            catalog = load_catalog(path)

        self.assertEqual(catalog.keys, ("A", "B"))
        self.assertEqual(catalog.get("A").points, 10)
        self.assertEqual(catalog.get("B").points, 5)

    def test_invalid_entry_is_reported(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "fragen.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump([{"raum": "A"}], f)
            with self.assertRaises(ValueError):
                load_catalog(path)


if __name__ == "__main__":
    unittest.main()
