import httpx
import pytest
import respx

from aether.core.exceptions import ToolArgumentSchemaError
from aether.schemas import ToolConfig
from aether.services.tools import (
    ImageGenerationTool,
    ReadSiteTool,
    SearchTool,
    ToolContext,
    ToolKind,
    WebSearchTool,
    html_to_text,
)
from tests.fakes import FakeOpenAIClient, FakeTavilyClient


class StaticCredentials:
    def __init__(self, key="sk-image"):
        self.key = key
        self.calls = []

    async def resolve(self, user_id, provider):
        self.calls.append((user_id, provider))
        return self.key


@pytest.mark.asyncio
async def test_web_search_defaults_and_alias_fields():
    tavily = FakeTavilyClient()
    tool = WebSearchTool("tvly-key", client_factory=lambda api_key: tavily)

    results = await tool.invoke('{"query": "fastapi release", "maxResults": 3, "timeRange": "all"}')

    assert tavily.calls == [{"query": "fastapi release", "search_depth": "advanced", "max_results": 3}]
    assert results[0]["publishedDate"] == "2026-01-01"


@pytest.mark.asyncio
async def test_web_search_failure_is_structured():
    tavily = FakeTavilyClient(error=RuntimeError("tavily down"))
    tool = WebSearchTool("tvly-key", client_factory=lambda api_key: tavily)

    result = await tool.invoke({"query": "anything"})

    assert result == {"error": "Failed to perform web search", "message": "tavily down", "query": "anything"}


@pytest.mark.asyncio
async def test_web_search_without_key_reports_error():
    result = await WebSearchTool(None).invoke({"query": "anything"})
    assert result["error"] == "Failed to perform web search"


def test_parse_args_rejects_schema_violations():
    tool = WebSearchTool("k")
    with pytest.raises(ToolArgumentSchemaError):
        tool.parse_args('{"query": ""}')
    with pytest.raises(ToolArgumentSchemaError):
        tool.parse_args("not json")


def test_openai_spec_uses_aliases():
    spec = WebSearchTool("k").openai_spec()
    assert spec["function"]["name"] == "webSearch"
    properties = spec["function"]["parameters"]["properties"]
    assert {"query", "maxResults", "searchDepth", "timeRange"} <= set(properties)
    assert "title" not in spec["function"]["parameters"]


@pytest.mark.asyncio
async def test_image_generation_one_request_per_image():
    client = FakeOpenAIClient()
    credentials = StaticCredentials()
    tool = ImageGenerationTool(credentials, None, client_factory=lambda api_key: client)

    result = await tool.invoke({"prompt": "a lighthouse at dusk over the sea", "style": "cartoon", "n": 2})

    assert result["success"] is True
    assert result["count"] == 2
    assert len(client.image_calls) == 2
    assert all(call["n"] == 1 and call["style"] == "vivid" for call in client.image_calls)
    assert client.image_calls[0]["prompt"].endswith("in cartoon style")
    assert credentials.calls == [(None, "openai")]
    assert "images" not in tool.to_model_content(result)


@pytest.mark.asyncio
async def test_image_generation_saves_to_gallery(services, user):
    client = FakeOpenAIClient()
    tool = ImageGenerationTool(StaticCredentials(), user.id, client_factory=lambda api_key: client, gallery=services.store)

    result = await tool.invoke({"prompt": "a lighthouse at dusk over the sea", "style": "cartoon", "n": 2})

    gallery = await services.store.list_ai_images(user.id)
    assert len(gallery) == 2
    assert {image.prompt for image in gallery} == {"a lighthouse at dusk over the sea"}
    assert all(image.image_url == "data:image/png;base64,aW1hZ2U=" for image in gallery)
    assert {image["id"] for image in result["images"]} == {str(image.id) for image in gallery}


@pytest.mark.asyncio
async def test_image_generation_failure_is_structured():
    client = FakeOpenAIClient(image_error=RuntimeError("content policy"))
    tool = ImageGenerationTool(StaticCredentials(), None, client_factory=lambda api_key: client)

    result = await tool.invoke({"prompt": "a lighthouse at dusk over the sea"})

    assert result["success"] is False
    assert result["error"] == "Failed to generate image"
    assert result["message"] == "content policy"


@pytest.mark.asyncio
async def test_research_search_truncates_content():
    tavily = FakeTavilyClient(results=[{"title": "T", "url": "https://x", "content": "y" * 900}])
    tool = SearchTool("k", client_factory=lambda api_key: tavily)

    results = await tool.execute(tool.parse_args({"thoughts": "looking", "query": "q"}))

    assert len(results[0]["content"]) == 503
    assert tavily.calls[0]["max_results"] == 5


def test_html_to_text_drops_chrome():
    html = "<html><head><style>p{}</style></head><body><nav>menu</nav><p>Body text</p><script>x()</script></body></html>"
    assert html_to_text(html) == "Body text"


@pytest.mark.asyncio
@respx.mock
async def test_read_site_truncates():
    respx.get("https://example.com/page").mock(return_value=httpx.Response(
        200, text="<html><body><p>" + "word " * 50 + "</p></body></html>", headers={"content-type": "text/html"},
    ))
    tool = ReadSiteTool(max_chars=20)

    result = await tool.execute(tool.parse_args({"thoughts": "reading", "url": "https://example.com/page"}))

    assert result["truncated"] is True
    assert len(result["content"]) == 20
    assert result["url"] == "https://example.com/page"


@pytest.mark.asyncio
@respx.mock
async def test_read_site_http_error_is_structured():
    respx.get("https://example.com/missing").mock(return_value=httpx.Response(404))
    tool = ReadSiteTool()

    result = await tool.execute(tool.parse_args({"thoughts": "reading", "url": "https://example.com/missing"}))

    assert result["error"] == "Tool read_site failed"
    assert "HTTP 404" in result["message"]


def test_registry_builds_requested_tools(services, user):
    toolset = services.tools.build(
        ToolConfig(web_search=True, image_generation=True), ToolContext(user_id=user.id)
    )
    assert [t.name for t in toolset.tools] == ["webSearch", "generateImage"]
    assert toolset.active_names == ["search", "image"]
    assert toolset.has(ToolKind.IMAGE_GENERATION)
    assert not services.tools.build(ToolConfig(), ToolContext(user_id=user.id))


def test_registry_skips_research_without_runner(services, user):
    toolset = services.tools.build(ToolConfig(research=True), ToolContext(user_id=user.id))
    assert toolset.tools == []
    assert not toolset.has(ToolKind.RESEARCH)
