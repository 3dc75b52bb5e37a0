import httpx
import pytest
import respx

from flyerdeals.ingest.enrich import ImageEnricher, build_query
from flyerdeals.ingest.ocr import ExtractedDeal


def test_build_query_strips_filler():
    assert build_query("Chicken Breast $3.99 lb SALE", "Perdue") == "Perdue Chicken Breast"
    assert build_query("Cola 2 for 5", None) == "Cola"


def test_build_query_skips_short_queries():
    assert build_query("oz", None) is None
    assert build_query("Ab", None) is None


@pytest.mark.asyncio
async def test_search_prefers_front_image(settings):
    payload = {
        "products": [
            {"product_name": "No image"},
            {"image_url": "https://img/general.jpg", "image_front_url": "https://img/front.jpg"},
        ]
    }
    async with respx.mock(assert_all_called=True) as router:
        route = router.get(host="off.test", path="/cgi/search.pl").respond(200, json=payload)
        async with httpx.AsyncClient() as session:
            url = await ImageEnricher(settings, session=session).search_image("Greek Yogurt", "Fage")
    assert url == "https://img/front.jpg"
    request = route.calls.last.request
    assert request.url.params["search_terms"] == "Fage Greek Yogurt"
    assert request.url.params["page_size"] == "5"
    assert "User-Agent" in request.headers


@pytest.mark.asyncio
async def test_enrich_leaves_image_empty_on_failure(settings):
    deals = [
        ExtractedDeal(product_name="Orange Juice", sale_price=2.99),
        ExtractedDeal(product_name="Bananas", sale_price=0.59),
    ]
    async with respx.mock(assert_all_called=False) as router:
        router.get(host="off.test", path="/cgi/search.pl").mock(
            side_effect=[httpx.Response(503), httpx.ReadTimeout("slow")]
        )
        async with httpx.AsyncClient() as session:
            enriched = await ImageEnricher(settings, session=session).enrich(deals)
    assert [deal.image_url for deal in enriched] == [None, None]
    assert [deal.product_name for deal in enriched] == ["Orange Juice", "Bananas"]


@pytest.mark.asyncio
async def test_enrich_sets_image_url(settings):
    deals = [ExtractedDeal(product_name="Peanut Butter", product_brand="Jif", sale_price=2.49)]
    async with respx.mock(assert_all_called=True) as router:
        router.get(host="off.test", path="/cgi/search.pl").respond(
            200, json={"products": [{"image_small_url": "https://img/small.jpg"}]}
        )
        async with httpx.AsyncClient() as session:
            enriched = await ImageEnricher(settings, session=session).enrich(deals)
    assert enriched[0].image_url == "https://img/small.jpg"
