"""Turn command and test outcomes into site knowledge and learnings."""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Sequence
from urllib.parse import urlparse

from ..browser.base import BrowserCapability
from ..memory.base import KnowledgeStore
from ..models import (
    Learning,
    LearningCategory,
    ModeResult,
    PageKnowledge,
    SiteKnowledge,
    StepResult,
    StepVerdict,
    TestStep,
    TestVerdict,
)
from ..notifications.base import OutputSink
from ..orchestrator.control import CancellationToken, race_cancellation, raise_if_cancelled
from ..orchestrator.prompt_builder import PromptBuilder

LOGGER = logging.getLogger(__name__)

SLOW_STEP_MS = 8000
MAX_KNOWN_ISSUES = 20
IGNORED_DOMAINS = frozenset({"unknown", "about:blank", ""})
TECHNICAL_ERROR_MARKERS = ("Error:", "Timeout", "session was closed", "ECONNREFUSED")

PAGE_ANALYSIS_PROMPT = """\
You are a QA tester cataloging the UI of this page. Use placeholders such as
<user_name>, <email> or <date> instead of live values.
Return JSON with the keys:
"title" (page heading), "description" (what the page is for, 1-2 sentences),
"pageType" (login, dashboard, settings, listing, detail, form, ...),
"navigation" (array of navigation elements), "interactiveElements" (array of
buttons, toggles, menus and other controls), "notes" (array of QA-relevant
observations such as spinners, empty states or visible errors)."""

LEARN_MODE_PROMPT = """\
SPECIAL MODE: LEARNING
You are a QA tester in learning mode. Use placeholders instead of live values.
Do NOT submit forms, create accounts or make destructive changes; only observe and navigate.

After exploring, provide a summary organized EXACTLY as:
**SITE OVERVIEW:**
What this site is and does (2-3 sentences)

**PAGES FOUND:**
For each page: `/path`: Page Title - description

**NAVIGATION:**
Main nav, sidebar, user menu, breadcrumbs, tabs

**KEY FLOWS:**
Important user journeys

**TIPS:**
QA-relevant observations"""

SECTION_BREAK = re.compile(r"\n\*\*[A-Z][A-Z ]+[A-Z]:?\*\*")
PAGE_LINE = re.compile(r"`?(/[^`:\s]*)`?\s*(?::|-|–)\s*(.+)")


def new_site_knowledge(domain: str) -> SiteKnowledge:
    return SiteKnowledge(domain=domain)


def add_page_if_new(knowledge: SiteKnowledge, url: str) -> None:
    if url in knowledge.pages:
        return
    path = urlparse(url).path or url
    knowledge.pages[url] = PageKnowledge(url=url, path=path)
    if path not in knowledge.site_map:
        knowledge.site_map.append(path)


def merge_page_analysis(knowledge: SiteKnowledge, url: str, analysis: dict[str, Any]) -> None:
    path = urlparse(url).path or url
    existing = knowledge.pages.get(url) or PageKnowledge(url=url, path=path)
    page = existing.model_copy(
        update={
            "title": _as_text(analysis.get("title")) or existing.title,
            "description": _as_text(analysis.get("description")) or existing.description,
            "page_type": _as_text(analysis.get("pageType")) or existing.page_type,
            "last_visited": datetime.now(timezone.utc),
        }
    )
    if isinstance(analysis.get("navigation"), list):
        page.navigation = [str(item) for item in analysis["navigation"]]
    if isinstance(analysis.get("interactiveElements"), list):
        page.interactive_elements = [str(item) for item in analysis["interactiveElements"]]
    notes = analysis.get("notes")
    if isinstance(notes, list):
        page.notes = [str(item) for item in notes]
    elif isinstance(notes, str) and notes:
        page.notes = [notes]
    knowledge.pages[url] = page
    if path not in knowledge.site_map:
        knowledge.site_map.append(path)
        knowledge.site_map.sort()


def action_urls(actions: Iterable[dict[str, Any]]) -> list[str]:
    urls = []
    for action in actions:
        url = action.get("page_url") or action.get("url")
        if isinstance(url, str) and url.startswith("http"):
            urls.append(url)
    return urls


def navigation_shortcuts(actions: Sequence[dict[str, Any]], domain: str) -> list[str]:
    """Describe path transitions within ``domain`` seen in an action trail."""

    shortcuts: list[str] = []
    paths: list[str] = []
    previous = ""
    for url in action_urls(actions):
        parsed = urlparse(url)
        if parsed.hostname != domain:
            continue
        current = parsed.path or "/"
        if current not in paths:
            paths.append(current)
        if previous and current != previous:
            shortcut = f"From {previous} navigated to {current}"
            if shortcut not in shortcuts:
                shortcuts.append(shortcut)
        previous = current
    if len(shortcuts) > 3:
        return [f"Navigation path for this task: {' -> '.join(paths)}"]
    return shortcuts


def extract_section(message: str, heading: str) -> Optional[str]:
    match = re.search(heading, message, re.IGNORECASE)
    if not match:
        return None
    rest = message[match.end():]
    following = SECTION_BREAK.search(rest)
    return rest[: following.start() if following else len(rest)].strip()


def parse_list_items(section: str) -> list[str]:
    items = []
    for line in section.splitlines():
        item = re.sub(r"^[-*•]\s*", "", line).strip()
        if len(item) > 5 and not re.fullmatch(r"\*+", item):
            items.append(item)
    return items


def parse_exploration_message(message: str, knowledge: SiteKnowledge, domain: str) -> None:
    """Fold a learning-mode exploration report into ``knowledge``."""

    overview = extract_section(message, r"\*\*SITE OVERVIEW:?\*\*")
    if overview and not knowledge.site_description:
        first_sentence = re.split(r"\.\s", overview)[0].strip()
        if len(first_sentence) > 10:
            knowledge.site_description = first_sentence.rstrip(".") + "."

    pages = extract_section(message, r"\*\*PAGES FOUND:?\*\*")
    if pages:
        for line in parse_list_items(pages):
            match = PAGE_LINE.search(line)
            if not match:
                continue
            path = match.group(1)
            title, _, description = match.group(2).partition(" - ")
            url = f"https://{domain}{path}"
            existing = knowledge.pages.get(url) or PageKnowledge(url=url, path=path)
            knowledge.pages[url] = existing.model_copy(
                update={
                    "title": title.strip() or existing.title,
                    "description": description.strip() or existing.description,
                    "last_visited": datetime.now(timezone.utc),
                }
            )
            if path not in knowledge.site_map:
                knowledge.site_map.append(path)
        knowledge.site_map.sort()

    navigation = extract_section(message, r"\*\*NAVIGATION:?\*\*")
    root = knowledge.pages.get(f"https://{domain}/")
    if navigation and root is not None:
        for item in parse_list_items(navigation):
            if item not in root.navigation:
                root.navigation.append(item)

    flows = extract_section(message, r"\*\*(?:KEY )?FLOWS:?\*\*")
    if flows:
        knowledge.common_flows = _unique(
            item for item in parse_list_items(flows) if not item.startswith("*")
        )

    tips = extract_section(message, r"\*\*TIPS:?\*\*")
    if tips:
        found = [item for item in parse_list_items(tips) if not item.startswith("*")]
        knowledge.tips = _unique(knowledge.tips + found)


def summarize_knowledge(knowledge: SiteKnowledge) -> str:
    parts = []
    if knowledge.site_description:
        parts.append(f"Site: {knowledge.site_description}")
    if knowledge.site_map:
        parts.append(f"Known paths: {', '.join(knowledge.site_map)}")
    if knowledge.common_flows:
        parts.append(f"Known flows: {'; '.join(knowledge.common_flows)}")
    if knowledge.tips:
        parts.append(f"Tips: {'; '.join(knowledge.tips)}")
    return "\n".join(parts)


async def analyze_current_page(capability: BrowserCapability) -> Optional[dict[str, Any]]:
    try:
        result = await capability.extract(PAGE_ANALYSIS_PROMPT)
    except Exception as exc:
        LOGGER.debug("Page analysis failed: %s", exc)
        return None
    return result if isinstance(result, dict) else None


async def extract_post_command_learnings(
    store: KnowledgeStore,
    capability: BrowserCapability,
    *,
    url: str,
    domain: str,
    instruction: str,
    mode: str,
    result: ModeResult,
    task_id: str,
) -> None:
    """Update site knowledge after a command: known issues, visited pages, recipes."""

    if domain in IGNORED_DOMAINS:
        return
    knowledge = await store.get_knowledge(domain) or new_site_knowledge(domain)

    if not result.success and result.message:
        if any(marker in result.message for marker in TECHNICAL_ERROR_MARKERS):
            issue = f"{mode} command failed with: {result.message[:100]}"
            if issue not in knowledge.known_issues:
                knowledge.known_issues = (knowledge.known_issues + [issue])[-MAX_KNOWN_ISSUES:]

    for page_url in action_urls(result.actions):
        add_page_if_new(knowledge, page_url)

    analysis = await analyze_current_page(capability)
    if analysis:
        merge_page_analysis(knowledge, url, analysis)

    if mode == "task" and result.actions:
        for shortcut in navigation_shortcuts(result.actions, domain):
            await store.add_learning(
                Learning(
                    domain=domain,
                    category=LearningCategory.NAVIGATION,
                    pattern=shortcut,
                    confidence=0.8,
                    source_task_id=task_id,
                )
            )
        if result.success and len(instruction) > 10:
            recipe = await _generate_recipe(capability, instruction, result)
            if recipe:
                await store.add_learning(
                    Learning(
                        domain=domain,
                        category=LearningCategory.RECIPE,
                        pattern=recipe,
                        confidence=0.85,
                        source_task_id=task_id,
                    )
                )

    if mode == "task" and not result.success and len(instruction) > 10:
        await store.add_learning(
            Learning(
                domain=domain,
                category=LearningCategory.GOTCHA,
                pattern=f'"{instruction[:60]}" failed: {(result.message or "unknown reason")[:100]}',
                confidence=0.6,
                source_task_id=task_id,
            )
        )

    knowledge.last_updated = datetime.now(timezone.utc)
    await store.save_knowledge(knowledge)


async def extract_test_step_learning(
    store: KnowledgeStore,
    *,
    domain: str,
    task_id: str,
    step: TestStep,
    verdict: StepVerdict,
    actual: str,
    duration_ms: int,
) -> None:
    if domain in IGNORED_DOMAINS or verdict == StepVerdict.SKIP:
        return
    if verdict == StepVerdict.FAIL:
        if step.setup:
            pattern = f'Setup step "{step.action[:80]}" failed: {actual[:120]}'
        else:
            pattern = (
                f'Assertion "{step.action[:80]}" failed, expected "{step.expected[:80]}" '
                f"but got: {actual[:120]}"
            )
        await store.add_learning(
            Learning(
                domain=domain,
                category=LearningCategory.GOTCHA,
                pattern=pattern,
                confidence=0.75,
                source_task_id=task_id,
            )
        )
    if verdict == StepVerdict.PASS and duration_ms > SLOW_STEP_MS:
        await store.add_learning(
            Learning(
                domain=domain,
                category=LearningCategory.GENERAL,
                pattern=(
                    f'"{step.action[:80]}" takes ~{round(duration_ms / 1000)}s; '
                    "allow extra wait time"
                ),
                confidence=0.7,
                source_task_id=task_id,
            )
        )


async def extract_test_run_learnings(
    store: KnowledgeStore,
    capability: BrowserCapability,
    *,
    domain: str,
    title: str,
    results: Sequence[StepResult],
    verdict: TestVerdict,
    task_id: str,
) -> None:
    if domain in IGNORED_DOMAINS:
        return
    failed = [result for result in results if result.verdict == StepVerdict.FAIL]
    passed = [result for result in results if result.verdict == StepVerdict.PASS]

    if verdict == TestVerdict.PASS and len(passed) > 1:
        summary = " -> ".join(result.step.action[:60] for result in passed)
        await store.add_learning(
            Learning(
                domain=domain,
                category=LearningCategory.RECIPE,
                pattern=f'Test "{title[:60]}": {summary}',
                confidence=0.85,
                source_task_id=task_id,
            )
        )

    if len(failed) > 1:
        failures = "; ".join(
            f'"{result.step.action[:40]}": {result.actual[:60]}' for result in failed
        )
        await store.add_learning(
            Learning(
                domain=domain,
                category=LearningCategory.GOTCHA,
                pattern=f'Test "{title[:40]}" had {len(failed)} failures: {failures[:300]}',
                confidence=0.8,
                source_task_id=task_id,
            )
        )

    if verdict != TestVerdict.PASS and failed:
        context = "\n".join(
            f'Step: "{result.step.action}" | Expected: "{result.step.expected}" | Got: "{result.actual}"'
            for result in failed
        )
        tip = await _extract_short_text(
            capability,
            f'A QA test "{title}" just ran on this website with verdict: {verdict.value}.\n'
            f"Failed steps:\n{context}\n\n"
            "Generate ONE short, reusable tip (1 sentence) that would help future tests avoid the same issue.\n"
            "Focus on UI behavior, timing, or interaction patterns, not the specific test data.\n"
            "Return ONLY the tip string.",
        )
        if tip:
            await store.add_learning(
                Learning(
                    domain=domain,
                    category=LearningCategory.GENERAL,
                    pattern=tip,
                    confidence=0.7,
                    source_task_id=task_id,
                )
            )


async def run_learn(
    capability: BrowserCapability,
    store: KnowledgeStore,
    *,
    url: str,
    domain: str,
    instruction: str,
    sink: Optional[OutputSink] = None,
    token: Optional[CancellationToken] = None,
    prompt_builder: Optional[PromptBuilder] = None,
) -> ModeResult:
    """Explore the current site and store what was found as site knowledge."""

    if domain in IGNORED_DOMAINS:
        return ModeResult(message="Navigate to a website first before learning it.", success=False)

    prompt_builder = prompt_builder or PromptBuilder()
    knowledge = await store.get_knowledge(domain) or new_site_knowledge(domain)
    learnings = await store.get_learnings(domain)
    known = summarize_knowledge(knowledge)

    if sink is not None:
        sink.info("Phase 1: Analyzing current page...")
    analysis = await race_cancellation(analyze_current_page(capability), token)
    if analysis:
        merge_page_analysis(knowledge, url, analysis)
    await store.save_knowledge(knowledge)

    if sink is not None:
        sink.info("Phase 2: Discovering site structure...")
    system_prompt = (
        prompt_builder.build_system_prompt(knowledge, learnings, include_base=False)
        + "\n\n"
        + LEARN_MODE_PROMPT
    )
    if instruction:
        explore = (
            f"Navigate DIRECTLY to: {instruction}\n"
            "Follow the path step by step. At each step, catalog every UI element you see. "
            "Do NOT visit other pages. Report everything you find in detail."
        )
        max_steps = 25
    else:
        explore = (
            "Explore and learn about this website thoroughly. Visit at least 5-10 different pages or views "
            "and catalog navigation links, buttons, inputs, toggles, tabs and tables on each. "
            + (f"What I already know:\n{known}\nFocus on discovering things NOT in the list above. " if known else "")
            + "Just observe and report everything you find."
        )
        max_steps = 40
    explored = await race_cancellation(
        capability.run_agent_task(explore, max_steps=max_steps, system_prompt=system_prompt),
        token,
    )

    raise_if_cancelled(token)
    if sink is not None:
        sink.info("Phase 3: Extracting structured knowledge...")
    structured = await race_cancellation(
        _safe_extract(
            capability,
            "Based on what you've seen on this website, return JSON with "
            '"description" (one sentence about what the site is) and '
            '"tips" (array of tips for interacting with it efficiently).',
        ),
        token,
    )
    if isinstance(structured, dict):
        description = structured.get("description") or structured.get("siteDescription")
        if isinstance(description, str) and description:
            knowledge.site_description = description
        if isinstance(structured.get("tips"), list):
            knowledge.tips = _unique(knowledge.tips + [str(tip) for tip in structured["tips"]])

    if explored.message:
        parse_exploration_message(explored.message, knowledge, domain)
    for page_url in action_urls(explored.actions):
        add_page_if_new(knowledge, page_url)

    task_id = f"learn-{uuid.uuid4().hex[:8]}"
    await store.add_learning(
        Learning(
            domain=domain,
            category=LearningCategory.NAVIGATION,
            pattern=f"Site has these pages: {', '.join(knowledge.site_map[:15])}",
            confidence=0.9,
            source_task_id=task_id,
        )
    )
    if knowledge.common_flows:
        await store.add_learning(
            Learning(
                domain=domain,
                category=LearningCategory.GENERAL,
                pattern=f"Key user flows: {'; '.join(knowledge.common_flows[:5])}",
                confidence=0.85,
                source_task_id=task_id,
            )
        )
    knowledge.last_updated = datetime.now(timezone.utc)
    await store.save_knowledge(knowledge)

    lines = [f"Learned about {domain}:"]
    if knowledge.site_description:
        lines.append(f"  Site: {knowledge.site_description}")
    lines += [
        f"  Pages discovered: {len(knowledge.pages)}",
        f"  Site map entries: {len(knowledge.site_map)}",
        f"  Common flows: {len(knowledge.common_flows)}",
        f"  Tips: {len(knowledge.tips)}",
        f"  Known issues: {len(knowledge.known_issues)}",
        "",
        explored.message or "Exploration complete.",
    ]
    return ModeResult(
        message="\n".join(lines),
        success=True,
        usage=explored.usage,
        actions=explored.actions,
    )


async def _generate_recipe(
    capability: BrowserCapability, instruction: str, result: ModeResult
) -> Optional[str]:
    trail: list[str] = []
    for url in action_urls(result.actions):
        path = urlparse(url).path
        if not trail or trail[-1] != path:
            trail.append(path)
    trail_context = f"Pages visited in order: {' -> '.join(trail)}\n" if trail else ""
    return await _extract_short_text(
        capability,
        f'The task "{instruction}" was just completed successfully on this website.\n'
        f"{trail_context}"
        f'The agent\'s final message was: "{result.message[:200]}"\n\n'
        "Summarize the steps into a SHORT, reusable recipe (1-2 sentences).\n"
        'Format: "To <goal>: <step1> -> <step2> -> <step3>". Use generic terms, not user data.\n'
        "Return ONLY the recipe string, nothing else.",
    )


async def _extract_short_text(capability: BrowserCapability, prompt: str) -> Optional[str]:
    extracted = await _safe_extract(capability, prompt)
    if isinstance(extracted, dict) and extracted:
        extracted = next(iter(extracted.values()))
    if isinstance(extracted, str) and len(extracted) > 15:
        return extracted[:200]
    return None


async def _safe_extract(capability: BrowserCapability, prompt: str) -> Any:
    try:
        return await capability.extract(prompt)
    except Exception as exc:
        LOGGER.debug("Learning extraction failed: %s", exc)
        return None


def _as_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _unique(items: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen
