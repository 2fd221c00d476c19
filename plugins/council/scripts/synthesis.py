#!/usr/bin/env python3
"""
Agent Council Result Synthesis

Reduces the per-agent results of one task into a SynthesisReport: claims
supported by two or more agents become agreement items, everything else is
divergence tagged by its originating agent, and the report confidence is the
minimum declared confidence among contributing agents.
"""
from __future__ import annotations

import dataclasses
import re
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Set, Tuple

from models import (
    AgentResult, AgreementItem, DivergenceItem, ReviewPayload, SynthesisReport,
    CONFIDENCE_LEVELS,
)
from utils import normalize_text

# Shortest shared word run that counts as agreement between two claims
MIN_SHARED_WORDS = 3
# Content words an agreement item must keep after trimming edge stopwords
MIN_CONTENT_WORDS = 2
MAX_RAW_CLAIMS = 50

WORD_PATTERN = re.compile(r"[a-z0-9]+(?:['-][a-z0-9]+)*")
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")
BULLET_PREFIX = re.compile(r"^(?:[-*•>#]+|\d+[.)])\s*")

STOPWORDS = frozenset(
    "a an and are as at be been but by for from has have in into is it its of on or "
    "that the their there these this those to was were will with which while".split()
)


def words(text: str) -> List[str]:
    return WORD_PATTERN.findall(text.lower())


def split_sentences(text: str) -> List[str]:
    """Split prose into sentences/lines, dropping bullet and heading prefixes."""
    out = []
    for piece in SENTENCE_SPLIT.split(text or ""):
        piece = BULLET_PREFIX.sub("", piece.strip()).strip()
        if piece:
            out.append(piece)
    return out


def _dedupe(items: Sequence[str]) -> List[str]:
    seen: Set[str] = set()
    out = []
    for item in items:
        key = normalize_text(item)
        if key and key not in seen:
            seen.add(key)
            out.append(item.strip())
    return out


def extract_claims(result: AgentResult) -> List[str]:
    """Claims an agent made: assessment sentences plus list fields, or raw sentences."""
    payload = result.payload
    if payload is not None:
        claims = split_sentences(payload.assessment)
        for field in ReviewPayload.LIST_FIELDS:
            claims.extend(getattr(payload, field))
        return _dedupe(claims)
    raw = [s for s in split_sentences(result.text) if len(words(s)) >= 3]
    return _dedupe(raw)[:MAX_RAW_CLAIMS]


def _trim_stopwords(run: List[str]) -> List[str]:
    start, end = 0, len(run)
    while start < end and run[start] in STOPWORDS:
        start += 1
    while end > start and run[end - 1] in STOPWORDS:
        end -= 1
    return run[start:end]


def shared_claim(a: str, b: str) -> Optional[str]:
    """Return the claim text two statements share, or None.

    Case-insensitive: either one statement's words appear contiguously inside
    the other (the shorter statement is returned), or both share a run of at
    least MIN_SHARED_WORDS words (the run is returned, edge stopwords trimmed).
    """
    wa, wb = words(a), words(b)
    if not wa or not wb:
        return None
    match = SequenceMatcher(None, wa, wb, autojunk=False).find_longest_match(0, len(wa), 0, len(wb))
    if match.size == 0:
        return None
    run = wa[match.a:match.a + match.size]
    trimmed = _trim_stopwords(run)
    if sum(1 for w in trimmed if w not in STOPWORDS) < MIN_CONTENT_WORDS:
        return None

    shorter = a if len(wa) <= len(wb) else b
    if match.size == min(len(wa), len(wb)):
        return shorter.strip().rstrip(".!?;:").strip()
    if match.size >= MIN_SHARED_WORDS:
        return " ".join(trimmed)
    return None


def _contains(outer: str, inner: str) -> bool:
    return f" {normalize_text(inner)} " in f" {normalize_text(outer)} "


@dataclasses.dataclass
class _Bucket:
    text: str
    agents: List[str]

    def add(self, *labels: str) -> None:
        for label in labels:
            if label not in self.agents:
                self.agents.append(label)


def _merge_into(buckets: List[_Bucket], text: str, labels: Sequence[str]) -> None:
    """Add text to an existing bucket it overlaps by containment, else a new one."""
    for bucket in buckets:
        if _contains(bucket.text, text) or _contains(text, bucket.text):
            bucket.add(*labels)
            return
    bucket = _Bucket(text=text, agents=[])
    bucket.add(*labels)
    buckets.append(bucket)


def _is_whole_claim(phrase: str, claim: str) -> bool:
    return words(phrase) == words(claim)


def find_agreement(
    claims: List[Tuple[str, List[str]]]
) -> Tuple[List[_Bucket], Set[Tuple[int, int]]]:
    """Pairwise claim matching across agents.

    Returns agreement buckets and the (agent_position, claim_position) pairs
    absorbed into agreement. A claim is absorbed only when the agreed text is
    the whole claim; a claim that merely shares a word run with another stays
    in divergence as well.
    """
    buckets: List[_Bucket] = []
    matched: Set[Tuple[int, int]] = set()
    for i, (label_a, claims_a) in enumerate(claims):
        for j in range(i + 1, len(claims)):
            label_b, claims_b = claims[j]
            for x, claim_a in enumerate(claims_a):
                for y, claim_b in enumerate(claims_b):
                    phrase = shared_claim(claim_a, claim_b)
                    if not phrase:
                        continue
                    _merge_into(buckets, phrase, (label_a, label_b))
                    if _is_whole_claim(phrase, claim_a) or _is_whole_claim(phrase, claim_b):
                        matched.add((i, x))
                        matched.add((j, y))
    return buckets, matched


def min_confidence(contributors: Sequence[AgentResult]) -> Optional[str]:
    """Most conservative confidence; an undeclared confidence counts as low."""
    if not contributors:
        return None
    levels = [r.confidence or "low" for r in contributors]
    return min(levels, key=CONFIDENCE_LEVELS.index)


def unify_recommendation(results: Sequence[AgentResult]) -> str:
    contributors = [r for r in results if r.succeeded]
    if not contributors:
        statuses = "; ".join(f"{r.label}: {r.status_label}" for r in results) or "no agents requested"
        return f"No consensus obtainable: no agent completed successfully ({statuses})."

    recs: List[_Bucket] = []
    for r in contributors:
        for rec in (r.payload.recommendations if r.payload else ()):
            _merge_into(recs, rec.strip(), (r.label,))

    if recs:
        shared = [b for b in recs if len(b.agents) >= 2]
        single = [b for b in recs if len(b.agents) < 2]
        return "\n".join(f"- {b.text} ({', '.join(b.agents)})" for b in shared + single)

    lines = []
    for r in contributors:
        source = r.payload.assessment if r.payload else r.text
        sentences = split_sentences(source)
        if sentences:
            lines.append(f"- {r.label}: {sentences[0]}")
    return "\n".join(lines) or "No recommendation was declared."


def synthesize(results: Sequence[AgentResult]) -> SynthesisReport:
    """Build the synthesis report from the complete, ordered result set."""
    ordered = tuple(sorted(results, key=lambda r: r.index))
    contributors = [r for r in ordered if r.succeeded]
    order: Dict[str, int] = {r.label: pos for pos, r in enumerate(ordered)}

    agreement: Tuple[AgreementItem, ...] = ()
    divergence: Optional[Tuple[DivergenceItem, ...]] = None

    if len(contributors) >= 2:
        claims = [(r.label, extract_claims(r)) for r in contributors]
        buckets, matched = find_agreement(claims)
        agreement = tuple(
            AgreementItem(claim=b.text, agents=tuple(sorted(b.agents, key=order.__getitem__)))
            for b in buckets
        )
        divergence = tuple(
            DivergenceItem(claim=claim, agent=label)
            for i, (label, agent_claims) in enumerate(claims)
            for x, claim in enumerate(agent_claims)
            if (i, x) not in matched
        )

    return SynthesisReport(
        results=ordered,
        agreement=agreement,
        divergence=divergence,
        recommendation=unify_recommendation(ordered),
        confidence=min_confidence(contributors),
    )


def _verdict(report: SynthesisReport) -> str:
    contributors = report.contributors
    if not contributors:
        return "No consensus obtainable"
    if len(contributors) == 1:
        return f"Single perspective ({contributors[0].label})"
    return "Consensus reached" if report.consensus else "No overlapping claims"


def render_markdown(report: SynthesisReport, title: str = "Council Synthesis Report") -> str:
    """Render the report as Markdown for the terminal and report.md."""
    lines = [
        f"# {title}",
        "",
        f"**Verdict:** {_verdict(report)}",
        f"**Confidence:** {report.confidence or 'n/a'}",
        f"**Agents consulted:** {len(report.results)} ({len(report.contributors)} complete)",
        "",
        "## Agent Status",
        "",
        "| Agent | Role | Status | Confidence | Attempts |",
        "|-------|------|--------|------------|----------|",
    ]
    for r in report.results:
        lines.append(
            f"| {r.agent} | {r.role} | {r.status_label} | {r.confidence or '-'} | {r.attempts} |"
        )

    if report.contributors:
        lines += ["", "## Agreement", ""]
        if report.agreement:
            lines += [f"- {a.claim} _({', '.join(a.agents)})_" for a in report.agreement]
        else:
            lines.append("_No claim was supported by more than one agent._")

    if report.divergence is not None:
        lines += ["", "## Divergence", ""]
        if report.divergence:
            lines += [f"- **{d.agent}**: {d.claim}" for d in report.divergence]
        else:
            lines.append("_None._")

    lines += ["", "## Recommendation", "", report.recommendation]

    failed = [r for r in report.results if not r.succeeded]
    if failed:
        lines += ["", "## Diagnostics", ""]
        for r in failed:
            lines.append(f"- **{r.label}** ({r.status_label}): {r.message or 'no details'}")
    return "\n".join(lines) + "\n"
