import json
import re
from typing import Any, Dict, List, Optional

from .config import PolicyConfig
from .errors import ValidationError
from .models import (
    Accuracy,
    AdCopy,
    ComplianceFlag,
    ComplianceOutcome,
    ComplianceVerdict,
    DomainClaim,
    DomainOutcome,
    DomainVerdict,
    EvidenceStrength,
    Severity,
)
from .prompts import compliance_prompt, copywriter_prompt, domain_prompt, reviser_prompt


_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def extract_json(text: str) -> Dict[str, Any]:
    """
    Pull a JSON object out of a model response.

    Models are asked for bare JSON but regularly wrap it in code fences or
    prose, or leave trailing commas behind. Tried in order: the raw text,
    the outermost `{...}` span, and that span with trailing commas removed.
    """
    candidates = [text]
    match = _OBJECT_RE.search(text)
    if match:
        candidates.append(match.group(0))
        candidates.append(_TRAILING_COMMA_RE.sub(r"\1", match.group(0)))

    for candidate in candidates:
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload

    raise ValidationError(f"no JSON object in model response: {text[:200]!r}")


def parse_ad_copy(payload: Dict[str, Any]) -> AdCopy:
    primary_text = str(payload.get("primaryText") or payload.get("primary_text") or "").strip()
    headline = str(payload.get("headline") or "").strip()
    if not primary_text or not headline:
        raise ValidationError(f"incomplete copy: {json.dumps(payload)[:200]}")
    description = str(payload.get("description") or "").strip()
    return AdCopy(primary_text=primary_text, headline=headline, description=description or None)


def _enum(enum_cls, raw: Any, default):
    try:
        return enum_cls(str(raw).strip().upper())
    except ValueError:
        return default


def parse_compliance_verdict(payload: Dict[str, Any]) -> ComplianceVerdict:
    flags = []
    for item in payload.get("flags") or []:
        if not isinstance(item, dict):
            continue
        flags.append(
            ComplianceFlag(
                quoted_text=str(item.get("text") or item.get("quoted_text") or ""),
                rule=str(item.get("rule") or ""),
                # Unknown severities are treated as "should fix".
                severity=_enum(Severity, item.get("severity"), Severity.YELLOW),
                suggested_fix=str(item.get("fix") or item.get("suggested_fix") or ""),
            )
        )

    if any(f.severity == Severity.RED for f in flags):
        inferred = ComplianceOutcome.FAIL
    elif flags:
        inferred = ComplianceOutcome.PASS_WITH_FIXES
    else:
        inferred = ComplianceOutcome.PASS

    raw_outcome = payload.get("verdict") or payload.get("outcome")
    outcome = _enum(ComplianceOutcome, raw_outcome, inferred) if raw_outcome else inferred
    # A PASS that still lists flags is not a pass.
    if outcome == ComplianceOutcome.PASS and flags:
        outcome = inferred
    return ComplianceVerdict(outcome=outcome, flags=flags)


def parse_domain_verdict(payload: Dict[str, Any]) -> DomainVerdict:
    claims = []
    for item in payload.get("claims") or []:
        if not isinstance(item, dict):
            continue
        claims.append(
            DomainClaim(
                claim_text=str(item.get("claim") or item.get("claim_text") or ""),
                accuracy=_enum(Accuracy, item.get("accuracy"), Accuracy.OVERSTATED),
                evidence_strength=_enum(
                    EvidenceStrength,
                    item.get("evidence") or item.get("evidence_strength"),
                    EvidenceStrength.NONE,
                ),
                issue=item.get("issue") or None,
                fix=item.get("fix") or None,
            )
        )

    if any(c.accuracy == Accuracy.INACCURATE for c in claims):
        inferred = DomainOutcome.RED
    elif any(c.accuracy != Accuracy.ACCURATE for c in claims):
        inferred = DomainOutcome.YELLOW
    else:
        inferred = DomainOutcome.GREEN

    raw_outcome = payload.get("verdict") or payload.get("outcome")
    outcome = _enum(DomainOutcome, raw_outcome, inferred) if raw_outcome else inferred
    return DomainVerdict(outcome=outcome, claims=claims)


def _copy_block(copy: AdCopy) -> str:
    return f"Primary Text: {copy.primary_text}\n\nHeadline: {copy.headline}"


class _ChatAdapter:
    """
    Shared plumbing for the LangChain chat-model collaborators.

    `llm` is any LangChain chat model (e.g. `ChatOpenAI`); it must be
    configured before use.
    """

    def __init__(self, llm: Any, policy: Optional[PolicyConfig] = None) -> None:
        self.llm = llm
        self.policy = policy or PolicyConfig()

    async def _ask(self, system: str, user: str) -> Dict[str, Any]:
        if self.llm is None:
            raise RuntimeError(
                f"{type(self).__name__}.llm is None. Configure a real LLM instance before use."
            )
        raw = await self.llm.ainvoke([("system", system), ("human", user)])
        return extract_json(content_text(raw))


def content_text(raw: Any) -> str:
    content = getattr(raw, "content", None)
    if isinstance(content, list):
        # Multimodal responses come back as a list of parts.
        return "".join(
            part.get("text", "") if isinstance(part, dict) else str(part) for part in content
        )
    return content or str(raw)


class LLMCopyGenerator(_ChatAdapter):
    async def draft(self, analysis: Dict[str, Any], tags: Dict[str, str]) -> AdCopy:
        payload = await self._ask(copywriter_prompt(self.policy), self._build_prompt(analysis, tags))
        return parse_ad_copy(payload)

    @staticmethod
    def _build_prompt(analysis: Dict[str, Any], tags: Dict[str, str]) -> str:
        return (
            "Write ad copy for this creative:\n\n"
            f"Ad Name: {tags.get('deliverable_name') or 'untitled'}\n"
            f"Angle: {tags.get('angle') or 'unspecified'}\n"
            f"Format: {tags.get('format') or 'unspecified'}\n"
            f"Messenger: {tags.get('messenger') or 'unspecified'}\n"
            f"Media type: {tags.get('media_type') or 'unspecified'}\n"
            "Creative analysis:\n"
            f"{json.dumps(analysis, indent=2, ensure_ascii=False)}\n\n"
            "Match the copy to what the creative actually shows and to the angle.\n"
            "Assume the audience is problem aware unless the angle says otherwise."
        )


class LLMComplianceReviewer(_ChatAdapter):
    async def review(self, draft: AdCopy) -> ComplianceVerdict:
        payload = await self._ask(compliance_prompt(self.policy), f"Review this ad copy:\n\n{_copy_block(draft)}")
        return parse_compliance_verdict(payload)


class LLMDomainReviewer(_ChatAdapter):
    async def review(self, draft: AdCopy) -> DomainVerdict:
        payload = await self._ask(domain_prompt(self.policy), f"Review this ad copy:\n\n{_copy_block(draft)}")
        return parse_domain_verdict(payload)


class LLMReviser(_ChatAdapter):
    async def revise(
        self,
        draft: AdCopy,
        flags: List[ComplianceFlag],
        claims: List[DomainClaim],
    ) -> AdCopy:
        payload = await self._ask(reviser_prompt(self.policy), self._build_prompt(draft, flags, claims))
        return parse_ad_copy(payload)

    @staticmethod
    def _build_prompt(draft: AdCopy, flags: List[ComplianceFlag], claims: List[DomainClaim]) -> str:
        flag_lines = [
            f'- [{f.severity.value}] "{f.quoted_text}" ({f.rule}) fix: {f.suggested_fix or "n/a"}'
            for f in flags
        ]
        claim_lines = [
            f'- [{c.accuracy.value}, evidence {c.evidence_strength.value}] "{c.claim_text}"'
            f" issue: {c.issue or 'n/a'} fix: {c.fix or 'n/a'}"
            for c in claims
        ]
        return (
            "Original ad copy:\n"
            f"{_copy_block(draft)}\n"
            f"Description: {draft.description or ''}\n\n"
            "Compliance flags:\n"
            f"{chr(10).join(flag_lines) or '- none'}\n\n"
            "Accuracy flags:\n"
            f"{chr(10).join(claim_lines) or '- none'}\n\n"
            "Apply the minimum changes that fix every flag."
        )
