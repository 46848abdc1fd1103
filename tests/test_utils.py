import asyncio

from app.utils import (
    RequestPacer,
    page_for_skip,
    parse_year,
    spelling_variants,
    strip_diacritics,
    transliterate,
)


def test_transliterate_spells_out_nordic_letters():
    assert transliterate("Förlåt") == "Foerlaat"
    assert transliterate("Straße") == "Strasse"


def test_strip_diacritics_drops_combining_marks():
    assert strip_diacritics("Förlåt") == "Forlat"
    assert strip_diacritics("Amélie") == "Amelie"


def test_spelling_variants_keep_order_and_drop_duplicates():
    assert spelling_variants("  Förlåt  ") == ["Förlåt", "Foerlaat", "Forlat"]
    assert spelling_variants("Squid   Game") == ["Squid Game"]


def test_parse_year_accepts_dates_and_ints():
    assert parse_year("2024-03-01") == 2024
    assert parse_year(1999) == 1999
    assert parse_year("unknown") is None
    assert parse_year(True) is None


def test_page_for_skip_uses_twenty_item_pages():
    assert page_for_skip(0) == 1
    assert page_for_skip(19) == 1
    assert page_for_skip(20) == 2
    assert page_for_skip(-5) == 1


def test_request_pacer_enforces_floor_between_calls():
    now = [0.0]
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    pacer = RequestPacer(250, clock=lambda: now[0], sleep=fake_sleep)

    async def runner() -> None:
        await pacer.wait()
        await pacer.wait()
        now[0] += 1.0
        await pacer.wait()

    asyncio.run(runner())

    assert sleeps == [0.25]


def test_request_pacer_spaces_out_concurrent_waiters():
    now = [0.0]
    sent: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        await asyncio.sleep(0)
        now[0] += seconds

    pacer = RequestPacer(250, clock=lambda: now[0], sleep=fake_sleep)

    async def call() -> None:
        await pacer.wait()
        sent.append(now[0])

    async def runner() -> None:
        await call()
        await asyncio.gather(call(), call(), call())

    asyncio.run(runner())

    gaps = [later - earlier for earlier, later in zip(sent, sent[1:])]
    assert gaps == [0.25, 0.25, 0.25]
