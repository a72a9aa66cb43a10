import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.template_render import placeholders, render_template, validate_templates


class TestTemplateRender(unittest.TestCase):
    def test_basic_placeholders(self) -> None:
        out = render_template("Record #{{record_number}} is {{ status }}", {"record_number": 12, "status": "open"})
        self.assertEqual(out, "Record #12 is open")

    def test_unknown_placeholder_stays_literal(self) -> None:
        self.assertEqual(render_template("Hi {{who}}!", {}), "Hi {{who}}!")

    def test_display_values(self) -> None:
        context = {"tags": ["a", "b"], "owner": {"id": "u1", "name": "Ann"}, "empty": None, "total": 3.0}
        out = render_template("{{tags}}|{{owner}}|{{empty}}|{{total}}", context)
        self.assertEqual(out, "a, b|Ann||3")

    def test_syntax_error_falls_back_to_substitution(self) -> None:
        with self.assertLogs("dynapp.templates", level="INFO"):
            out = render_template("{% if %}{{name}} {{other}}", {"name": "Ann"})
        self.assertEqual(out, "{% if %}Ann {{other}}")

    def test_expressions_are_not_evaluated(self) -> None:
        text = "Total {{ qty * 2 }} / {{ 'ab' * 3 }} / {{ 9 ** 9 ** 9 }} / {{qty}}"
        with self.assertLogs("dynapp.templates", level="INFO"):
            out = render_template(text, {"qty": 3})
        self.assertEqual(out, "Total {{ qty * 2 }} / {{ 'ab' * 3 }} / {{ 9 ** 9 ** 9 }} / 3")

    def test_literal_text_kept_exactly(self) -> None:
        text = "Hi {{ who }} and {{who}}\n\n"
        self.assertEqual(render_template(text, {}), text)
        self.assertEqual(render_template("{{ name }}\n", {"name": "Ann"}), "Ann\n")
        self.assertEqual(render_template("a {# note #} {{name}}", {"name": "Ann"}), "a {# note #} Ann")

    def test_attribute_access_blocked(self) -> None:
        out = render_template("{{ name.__class__ }}", {"name": "Ann"})
        self.assertNotIn("<class", out)

    def test_empty_template(self) -> None:
        self.assertEqual(render_template(None, {"a": 1}), "")

    def test_placeholders(self) -> None:
        self.assertEqual(placeholders("{{a}} and {{ b }}"), {"a", "b"})
        self.assertEqual(placeholders(""), set())

    def test_validate_templates(self) -> None:
        issues = validate_templates([("title", "Hi {{owner}} {{ghost}}"), ("message", None)], {"owner"})
        self.assertEqual([i["code"] for i in issues], ["TEMPLATE_PLACEHOLDER_UNKNOWN"])
        self.assertEqual(issues[0]["detail"], {"name": "ghost"})
        broken = validate_templates([("message", "{% if %}")], set())
        self.assertEqual(broken[0]["code"], "TEMPLATE_SYNTAX")
        for text in ("{{ qty * 2 }}", "{% for x in y %}{{x}}{% endfor %}", "{{ name|upper }}", "{{ name.attr }}", "{{- name }}"):
            issues = validate_templates([("message", text)], {"qty", "name", "y"})
            self.assertEqual([i["code"] for i in issues], ["TEMPLATE_EXPRESSION_NOT_ALLOWED"], text)


if __name__ == "__main__":
    unittest.main()
