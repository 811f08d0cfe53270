import asyncio
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest

from critical.workflows.css_utils import parse_stylesheet
from critical.workflows.renderer import CriticalRuleFilter, RenderRequest, collect_selectors

FIXTURES = Path(__file__).parent / "fixtures"


class FakeRenderer:
    """Deterministic stand-in for the browser: ``visible`` selectors are above the fold."""

    def __init__(
        self,
        visible: Iterable[str] = ("html", "body", ".header", ".title"),
        delays: Optional[Dict[int, float]] = None,
        errors: Optional[Dict[int, BaseException]] = None,
    ) -> None:
        self.visible = set(visible)
        self.delays = delays or {}
        self.errors = errors or {}
        self.requests: List[RenderRequest] = []
        self.completed: List[int] = []

    async def render(self, request: RenderRequest) -> str:
        self.requests.append(request)
        delay = self.delays.get(request.width, 0)
        if delay:
            await asyncio.sleep(delay)
        if request.width in self.errors:
            raise self.errors[request.width]
        nodes = parse_stylesheet(request.css, strict=False, compact=True)
        visible = {selector: selector in self.visible for selector in collect_selectors(nodes)}
        self.completed.append(request.width)
        return CriticalRuleFilter(request, visible).apply(nodes)


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()
