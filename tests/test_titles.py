import unittest

from assistant_runs.titles import generate_title, is_boilerplate, is_placeholder_title, should_generate_title


class TitleTests(unittest.TestCase):
    def test_generate_title_strips_filler_and_markup(self) -> None:
        self.assertEqual("Fix the flaky test", generate_title("can you fix the **flaky** test?"))
        self.assertEqual("Deploy notes", generate_title("\n\n# deploy notes\nmore detail"))

    def test_generate_title_caps_words(self) -> None:
        title = generate_title("one two three four five six seven eight nine ten")
        self.assertEqual("One two three four five six seven eight", title)

    def test_generate_title_empty(self) -> None:
        self.assertIsNone(generate_title("   "))

    def test_boilerplate(self) -> None:
        self.assertTrue(is_boilerplate("hi!"))
        self.assertTrue(is_boilerplate("ok"))
        self.assertFalse(is_boilerplate("list open pull requests"))

    def test_should_generate_title(self) -> None:
        self.assertTrue(should_generate_title("New chat", 1, "list open pull requests"))
        self.assertTrue(should_generate_title("New chat", 4, "list open pull requests"))
        self.assertFalse(should_generate_title("Release prep", 4, "list open pull requests"))
        self.assertFalse(should_generate_title("New chat", 1, "thanks"))
        self.assertTrue(is_placeholder_title(None))
