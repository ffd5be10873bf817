import asyncio
import json
import logging
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Literal, Protocol

import httpx
from bs4 import BeautifulSoup
from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tavily import AsyncTavilyClient

from aether.core.config import Settings, get_settings
from aether.core.exceptions import ToolArgumentSchemaError, ToolExecutionError
from aether.schemas import ToolConfig

logger = logging.getLogger(__name__)

TavilyFactory = Callable[[str], Any]
ImageClientFactory = Callable[[str], Any]


class BaseTool(ABC):
    """Base class for model-callable tools.

    Arguments are validated against ``input_model`` before ``run`` is called.
    ``execute`` never raises for execution failures: they come back as a
    structured ``{"error", "message"}`` result so one failing tool does not
    abort the rest of the generation.
    """

    name: str
    description: str
    input_model: type[BaseModel]
    output_limit: int = 4000
    # research action log type ("search" | "read"), research tools only
    action_type: str | None = None

    def openai_spec(self) -> dict[str, Any]:
        parameters = self.input_model.model_json_schema(by_alias=True)
        parameters.pop("title", None)
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def parse_args(self, raw_args: Any) -> BaseModel:
        if isinstance(raw_args, self.input_model):
            return raw_args
        if isinstance(raw_args, (str, bytes)):
            try:
                raw_args = json.loads(raw_args or "{}")
            except json.JSONDecodeError as e:
                raise ToolArgumentSchemaError(self.name, f"arguments are not valid JSON ({e})")
        try:
            return self.input_model.model_validate(raw_args)
        except ValidationError as e:
            raise ToolArgumentSchemaError(self.name, str(e))

    @abstractmethod
    async def run(self, args: Any) -> Any:
        pass

    def error_result(self, exc: Exception, args: Any) -> dict[str, Any]:
        return {"error": f"Tool {self.name} failed", "message": str(exc)}

    async def execute(self, args: BaseModel) -> Any:
        try:
            return await self.run(args)
        except Exception as e:
            logger.warning("Tool %s failed: %s", self.name, e, exc_info=True)
            return self.error_result(e, args)

    async def invoke(self, raw_args: Any) -> Any:
        """Validate then execute. Invalid arguments are reported as a failed call."""
        try:
            args = self.parse_args(raw_args)
        except ToolArgumentSchemaError as e:
            logger.warning("Tool %s rejected arguments: %s", self.name, e)
            return {"error": "Invalid tool arguments", "message": str(e)}
        return await self.execute(args)

    def to_model_content(self, result: Any) -> str:
        """Serialize a result for the follow-up model turn."""
        content = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
        if len(content) > self.output_limit:
            content = content[: self.output_limit] + "\n...[truncated]"
        return content


class WebSearchInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(min_length=1, max_length=150, description="The search query to find relevant, recent information")
    max_results: int = Field(default=7, ge=1, le=20, alias="maxResults", description="Maximum number of results to return (default: 7)")
    search_depth: Literal["basic", "advanced"] = Field(default="advanced", alias="searchDepth", description="Search depth level (default: advanced)")
    time_range: Literal["week", "month", "year", "all"] = Field(default="week", alias="timeRange", description="Time range for search results (default: week)")


def _default_tavily_factory(api_key: str) -> AsyncTavilyClient:
    return AsyncTavilyClient(api_key=api_key)


async def _tavily_search(client: Any, query: str, **kwargs: Any) -> list[dict[str, Any]]:
    resp = await client.search(query, **kwargs)
    results = resp.get("results") or []
    return [
        {
            "title": (r.get("title") or "").strip(),
            "url": r.get("url") or "",
            "content": re.sub(r"\s+", " ", (r.get("content") or "").strip()),
            "score": r.get("score"),
            "publishedDate": r.get("published_date"),
        }
        for r in results
    ]


class WebSearchTool(BaseTool):
    """Search the web via the Tavily API."""

    name = "webSearch"
    description = "Search the web for up-to-date information with advanced filtering options"
    input_model = WebSearchInput

    def __init__(self, api_key: str | None, client_factory: TavilyFactory | None = None):
        self.api_key = api_key
        self.client_factory = client_factory or _default_tavily_factory

    async def run(self, args: WebSearchInput) -> list[dict[str, Any]]:
        if not self.api_key:
            raise ToolExecutionError("Tavily API key is not configured.")
        client = self.client_factory(self.api_key)
        kwargs: dict[str, Any] = {
            "search_depth": args.search_depth,
            "max_results": args.max_results,
        }
        if args.time_range != "all":
            kwargs["time_range"] = args.time_range
        results = await _tavily_search(client, args.query, **kwargs)
        logger.info("webSearch %r returned %d results", args.query[:80], len(results))
        return results

    def error_result(self, exc: Exception, args: WebSearchInput) -> dict[str, Any]:
        return {"error": "Failed to perform web search", "message": str(exc), "query": args.query}


class ImageGenerationInput(BaseModel):
    prompt: str = Field(min_length=10, max_length=500, description="Detailed description of the image to generate")
    style: Literal["realistic", "artistic", "cartoon", "abstract"] = Field(default="realistic", description="Visual style for the generated image (default: realistic)")
    quality: Literal["standard", "hd"] = Field(default="hd", description="Image quality setting (default: hd)")
    size: Literal["1024x1024", "1792x1024", "1024x1792"] = Field(default="1024x1024", description="Image size (default: 1024x1024)")
    n: int = Field(default=1, ge=1, le=4, description="Number of images to generate (default: 1)")


def _default_image_client_factory(api_key: str) -> AsyncOpenAI:
    return AsyncOpenAI(api_key=api_key)


class CredentialSource(Protocol):
    async def resolve(self, user_id: uuid.UUID | None, provider: str) -> str: ...


class ImageGallery(Protocol):
    async def save_ai_image(self, user_id: uuid.UUID, prompt: str, image_url: str) -> Any: ...


class ImageGenerationTool(BaseTool):
    """Generate images with the OpenAI Images API, one request per image."""

    name = "generateImage"
    description = "Generate high-quality images based on detailed text descriptions using AI models"
    input_model = ImageGenerationInput

    def __init__(
        self,
        credentials: CredentialSource,
        user_id: uuid.UUID | None,
        model: str = "dall-e-3",
        client_factory: ImageClientFactory | None = None,
        gallery: ImageGallery | None = None,
    ):
        self.credentials = credentials
        self.user_id = user_id
        self.model = model
        self.client_factory = client_factory or _default_image_client_factory
        self.gallery = gallery

    async def run(self, args: ImageGenerationInput) -> dict[str, Any]:
        api_key = await self.credentials.resolve(self.user_id, "openai")
        client = self.client_factory(api_key)
        prompt = args.prompt if args.style == "realistic" else f"{args.prompt} in {args.style} style"

        async def generate_one() -> list[str]:
            resp = await client.images.generate(
                model=self.model,
                prompt=prompt,
                size=args.size,
                quality=args.quality,
                style="natural" if args.style == "realistic" else "vivid",
                response_format="b64_json",
                n=1,
            )
            return [item.b64_json for item in resp.data if item.b64_json]

        batches = await asyncio.gather(*(generate_one() for _ in range(args.n)))
        images = [b64 for batch in batches for b64 in batch]
        if not images:
            raise ToolExecutionError("No images generated")
        generated = [{"base64": b64, "url": f"data:image/png;base64,{b64}"} for b64 in images]
        if self.gallery is not None and self.user_id is not None:
            for image in generated:
                saved = await self.gallery.save_ai_image(self.user_id, args.prompt, image["url"])
                image["id"] = str(saved.id)
        return {
            "success": True,
            "images": generated,
            "prompt": prompt,
            "style": args.style,
            "quality": args.quality,
            "size": args.size,
            "count": len(images),
        }

    def error_result(self, exc: Exception, args: ImageGenerationInput) -> dict[str, Any]:
        return {"success": False, "error": "Failed to generate image", "message": str(exc), "prompt": args.prompt}

    def to_model_content(self, result: Any) -> str:
        # the model only needs to know the images exist
        if isinstance(result, dict) and result.get("success"):
            summary = {k: v for k, v in result.items() if k != "images"}
            return json.dumps(summary, ensure_ascii=False)
        return super().to_model_content(result)


class ResearchInput(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000, description="The topic or question to research in depth")
    thoughts: str = Field(default="", description="Why this research is needed, in one or two sentences")


class ResearchRunnerLike(Protocol):
    async def run(self, user_id: uuid.UUID, prompt: str, thoughts: str = "") -> Any: ...


class ResearchTool(BaseTool):
    """Run a bounded multi-step research session and return its summary."""

    name = "research"
    description = (
        "Conduct deep, multi-step research on a topic by searching the web and reading sources. "
        "Use for questions that need a thorough, well-sourced answer."
    )
    input_model = ResearchInput
    output_limit = 12000

    def __init__(self, runner: ResearchRunnerLike, user_id: uuid.UUID):
        self.runner = runner
        self.user_id = user_id

    async def run(self, args: ResearchInput) -> dict[str, Any]:
        outcome = await self.runner.run(self.user_id, args.prompt, args.thoughts)
        return {
            "sessionId": str(outcome.session_id),
            "summary": outcome.summary,
            "actions": outcome.actions,
        }


class ResearchSearchInput(BaseModel):
    thoughts: str = Field(description="Your thoughts on what you are currently doing in 20-50 words.")
    query: str = Field(min_length=1)


class ResearchReadInput(BaseModel):
    thoughts: str = Field(description="Your thoughts on what you are currently doing in 20-50 words.")
    url: str = Field(min_length=1)


class SearchTool(BaseTool):
    """Research-session web search."""

    name = "search"
    description = "Search the web for information"
    input_model = ResearchSearchInput
    action_type = "search"

    def __init__(self, api_key: str | None, client_factory: TavilyFactory | None = None, max_results: int = 5):
        self.api_key = api_key
        self.client_factory = client_factory or _default_tavily_factory
        self.max_results = max_results

    async def run(self, args: ResearchSearchInput) -> list[dict[str, Any]]:
        if not self.api_key:
            raise ToolExecutionError("Tavily API key is not configured.")
        client = self.client_factory(self.api_key)
        results = await _tavily_search(client, args.query, search_depth="advanced", max_results=self.max_results)
        for r in results:
            if len(r["content"]) > 500:
                r["content"] = r["content"][:500] + "..."
        return results


def html_to_text(html: str) -> str:
    """Strip scripts, styles and page chrome, keeping readable text."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "noscript"]):
        tag.decompose()
    text = soup.get_text(separator="\n", strip=True)
    return re.sub(r"\n{3,}", "\n\n", text)


class ReadSiteTool(BaseTool):
    """Fetch a URL and return its readable text."""

    name = "read_site"
    description = "Read the contents of a URL"
    input_model = ResearchReadInput
    action_type = "read"

    def __init__(self, max_chars: int = 8000, timeout: float = 20.0):
        self.max_chars = max_chars
        self.timeout = timeout
        self.output_limit = max_chars + 200

    async def run(self, args: ResearchReadInput) -> dict[str, Any]:
        if not args.url.startswith(("http://", "https://")):
            raise ToolExecutionError(f"Unsupported URL: {args.url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                resp = await client.get(args.url, headers={"User-Agent": "AetherResearch/1.0"})
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(f"HTTP {e.response.status_code} fetching {args.url}")
        except httpx.RequestError as e:
            raise ToolExecutionError(f"Failed to fetch {args.url}: {e}")

        content_type = resp.headers.get("content-type", "")
        text = html_to_text(resp.text) if "html" in content_type or not content_type else resp.text
        truncated = len(text) > self.max_chars
        return {"url": str(resp.url), "content": text[: self.max_chars], "truncated": truncated}


class ToolKind(str, Enum):
    WEB_SEARCH = "search"
    IMAGE_GENERATION = "image"
    RESEARCH = "research"


def enabled_kinds(config: ToolConfig) -> list[ToolKind]:
    flags = {
        ToolKind.WEB_SEARCH: config.web_search,
        ToolKind.IMAGE_GENERATION: config.image_generation,
        ToolKind.RESEARCH: config.research,
    }
    return [kind for kind in ToolKind if flags[kind]]


@dataclass
class ToolContext:
    user_id: uuid.UUID
    research_runner: ResearchRunnerLike | None = None


@dataclass
class ToolSet:
    tools: list[BaseTool] = field(default_factory=list)
    kinds: list[ToolKind] = field(default_factory=list)

    @property
    def active_names(self) -> list[str]:
        return [kind.value for kind in self.kinds]

    def has(self, kind: ToolKind) -> bool:
        return kind in self.kinds

    def __bool__(self) -> bool:
        return bool(self.tools)


class ToolRegistry:
    """Builds the tools exposed to the model for one request."""

    def __init__(
        self,
        credentials: CredentialSource,
        settings: Settings | None = None,
        *,
        tavily_factory: TavilyFactory | None = None,
        image_client_factory: ImageClientFactory | None = None,
        gallery: ImageGallery | None = None,
    ):
        self.credentials = credentials
        self.settings = settings or get_settings()
        self.tavily_factory = tavily_factory
        self.image_client_factory = image_client_factory
        self.gallery = gallery
        self._builders: dict[ToolKind, Callable[[ToolContext], BaseTool | None]] = {
            ToolKind.WEB_SEARCH: self._web_search,
            ToolKind.IMAGE_GENERATION: self._image_generation,
            ToolKind.RESEARCH: self._research,
        }
        missing = set(ToolKind) - set(self._builders)
        if missing:
            raise RuntimeError(f"No builder for tool kinds: {sorted(k.value for k in missing)}")

    def _web_search(self, context: ToolContext) -> BaseTool:
        return WebSearchTool(self.settings.tavily_api_key, self.tavily_factory)

    def _image_generation(self, context: ToolContext) -> BaseTool:
        return ImageGenerationTool(
            self.credentials,
            context.user_id,
            model=self.settings.image_model,
            client_factory=self.image_client_factory,
            gallery=self.gallery,
        )

    def _research(self, context: ToolContext) -> BaseTool | None:
        if context.research_runner is None:
            logger.warning("Research requested but no research runner is configured")
            return None
        return ResearchTool(context.research_runner, context.user_id)

    def build(self, config: ToolConfig, context: ToolContext) -> ToolSet:
        toolset = ToolSet()
        for kind in enabled_kinds(config):
            tool = self._builders[kind](context)
            if tool is None:
                continue
            toolset.tools.append(tool)
            toolset.kinds.append(kind)
        return toolset

    def research_tools(self) -> list[BaseTool]:
        return [
            SearchTool(self.settings.tavily_api_key, self.tavily_factory),
            ReadSiteTool(max_chars=self.settings.read_site_max_chars),
        ]
