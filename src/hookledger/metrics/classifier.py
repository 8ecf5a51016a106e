"""Prompt categorization by keyword patterns.

Prompts are never stored; only the category, subcategory and length reach
the prompts ledger. Rules are tested in order and the first match wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass


def _words(*alternatives: str) -> re.Pattern[str]:
    return re.compile(r"\b(" + "|".join(alternatives) + r")\b", re.IGNORECASE)


FEATURE_DEV = _words(
    "add", "create", "implement", "build", "new feature", "develop", "initialise", "initialize"
)
BUG_FIX = _words(
    "fix", "bug", "error", "issue", "broken", "not working", "doesn't work", "doesnt work"
)
TESTING = _words(
    "test", "testing", "spec", "unit test", "integration test", "e2e",
    "verify", "validate", "behaviour", "behavior",
)
REFACTORING = _words(
    "refactor", "cleanup", "clean up", "reorganize", "reorganise",
    "restructure", "improve", "optimize", "optimise",
)
DOCUMENTATION = _words(
    "document", "documentation", "comment", "readme", "docs",
    "explain", "describe", "summarise", "summarize",
)
CODE_UNDERSTANDING = _words(
    "what", "how", "why", "where", "when", "explain", "understand", "show me",
    "tell me", "can you", "could you", "would you", "find", "analyse", "analyze",
)
EXPLANATION = _words("how does", "how is", "explain", "understand")
NAVIGATION = _words("find", "search", "where", "locate")
DEBUGGING = _words(
    "debug", "debugger", "breakpoint", "trace", "inspect", "investigate", "troubleshoot"
)
CODE_REVIEW = _words(
    "review", "check", "verify", "validate", "look at", "examine", "analyse", "analyze"
)
CONFIGURATION = _words(
    "config", "configure", "setup", "set up", "install", "deploy", "initialise", "initialize"
)
VERSION_CONTROL = _words(
    "commit", "push", "pull", "merge", "branch", "git", "pr", "pull request", "rebase"
)


@dataclass(frozen=True)
class PromptCategory:
    """Result of classifying a prompt."""

    category: str
    subcategory: str


@dataclass(frozen=True)
class CategoryRule:
    """One entry of the ordered rule list.

    Attributes:
        category: Category reported when `pattern` matches.
        pattern: Pattern that selects this rule.
        default: Subcategory when no refinement matches.
        refinements: (subcategory, pattern) pairs tested in order.
    """

    category: str
    pattern: re.Pattern[str]
    default: str
    refinements: tuple[tuple[str, re.Pattern[str]], ...] = ()

    def match(self, text: str) -> PromptCategory | None:
        if not self.pattern.search(text):
            return None
        for subcategory, pattern in self.refinements:
            if pattern.search(text):
                return PromptCategory(self.category, subcategory)
        return PromptCategory(self.category, self.default)


# Bug fixes come before feature work: "fix X and add a test" is a fix.
RULES: tuple[CategoryRule, ...] = (
    CategoryRule("bug_fix", BUG_FIX, "fix", (("with_tests", TESTING),)),
    CategoryRule("feature_development", FEATURE_DEV, "implementation", (("with_tests", TESTING),)),
    CategoryRule("testing", TESTING, "writing_tests"),
    CategoryRule("refactoring", REFACTORING, "code_improvement"),
    CategoryRule("documentation", DOCUMENTATION, "writing_docs"),
    CategoryRule(
        "code_understanding",
        CODE_UNDERSTANDING,
        "question",
        (("explanation", EXPLANATION), ("navigation", NAVIGATION)),
    ),
    CategoryRule("debugging", DEBUGGING, "investigation"),
    CategoryRule("code_review", CODE_REVIEW, "review"),
    CategoryRule("configuration", CONFIGURATION, "setup"),
    CategoryRule("version_control", VERSION_CONTROL, "git_operations"),
)

GENERAL = PromptCategory("general", "other")


def classify_prompt(text: str) -> PromptCategory:
    """Classify prompt text into a fixed category taxonomy.

    Args:
        text: The raw prompt text.

    Returns:
        The first matching PromptCategory, or general/other.
    """
    for rule in RULES:
        result = rule.match(text)
        if result is not None:
            return result
    return GENERAL
