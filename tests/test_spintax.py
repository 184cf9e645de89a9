"""Spintax / delay tag rendering tests."""

import random

from app.integrations.spintax import render


class TestRender:
    def test_plain_text_passes_through(self) -> None:
        rendered = render("hola mundo")
        assert rendered.text == "hola mundo"
        assert rendered.delay_ms == 0

    def test_empty(self) -> None:
        assert render(None).text == ""
        assert render("").delay_ms == 0

    def test_delay_tag(self) -> None:
        rendered = render("!/DELAY/1000/2000/!hola", random.Random(7))
        assert rendered.text == "hola"
        assert 1000 <= rendered.delay_ms <= 2000

    def test_reversed_delay_bounds(self) -> None:
        rendered = render("!/DELAY/900/100/!x", random.Random(1))
        assert 100 <= rendered.delay_ms <= 900

    def test_variants_are_picked_from_definition(self) -> None:
        text = "!/SPINTAX_SALUDO/Hola/Buenas/Hey/SPINTAX_SALUDO/!${SPINTAX_SALUDO}, Ana"
        seen = {render(text, random.Random(seed)).text for seed in range(30)}
        assert seen <= {"Hola, Ana", "Buenas, Ana", "Hey, Ana"}
        assert len(seen) > 1

    def test_undefined_placeholder_is_left_untouched(self) -> None:
        assert render("Hi ${SPINTAX_NAME}").text == "Hi ${SPINTAX_NAME}"

    def test_extra_newlines_collapse(self) -> None:
        text = "!/SPINTAX_A/x/SPINTAX_A/!\n\n\n\nline\n\n\n\nend"
        assert render(text).text == "line\n\nend"
