# rulebook/reflector/prompts.py
import json

from rulebook.core.schema import Playbook, PlaybookDelta

DELTA_SYSTEM_PROMPT = """You are a reflector that turns a coding agent's session \
into proposed changes to its playbook of rules.

Your role is to:
1. Spot reusable lessons (what worked, what wasted time, what broke)
2. Mark existing bullets that helped or hurt in this session
3. Propose new bullets that are SHORT, SPECIFIC and REUSABLE
4. Propose replace, deprecate or merge deltas only when clearly warranted

CRITICAL RULES:
- Output ONLY valid JSON: {"deltas": [...]}
- NO markdown fencing (no ```json)
- Each delta has a "type": add | helpful | harmful | replace | deprecate | merge
- add: {"type": "add", "bullet": {"content", "category", "tags", "is_negative"}, "reason"}
- helpful/harmful: {"type": ..., "bullet_id", "context"}; harmful may set "reason" to one of
  caused_bug, wasted_time, contradicted_requirements, wrong_context, outdated, other
- replace: {"type": "replace", "bullet_id", "new_content"}
- deprecate: {"type": "deprecate", "bullet_id", "reason"}
- merge: {"type": "merge", "bullet_ids": [...], "merged_content"}
- Never re-propose a delta listed under "Already proposed"
- Return {"deltas": []} when there is nothing new"""

DELTA_USER_TEMPLATE = """Session: {session_path}

**Session diary:**
{diary}

**Existing playbook ({bullet_count} live bullets):**
{playbook_summary}

**Already proposed (iteration {iteration}):**
{previous}

Output pure JSON (no markdown fencing):"""

VALIDATOR_SYSTEM_PROMPT = """You validate a proposed rule for a coding agent \
against evidence from its past sessions.

Decide one verdict:
- ACCEPT: the evidence supports the rule as written
- REJECT: the evidence contradicts the rule or shows it causes failures
- REFINE: the rule is partly right; supply a corrected "refined_rule"

CRITICAL RULES:
- Output ONLY valid JSON:
  {"verdict": "ACCEPT|REJECT|REFINE", "confidence": <0.0-1.0>, "reason": "...", "refined_rule": "..."}
- NO markdown fencing"""

VALIDATOR_USER_TEMPLATE = """**Proposed rule:** {rule}

**Evidence ({hit_count} snippets):**
{evidence}

Return the verdict JSON:"""

SUMMARY_MAX_BULLETS = 100


def summarize_playbook(playbook: Playbook, limit: int = SUMMARY_MAX_BULLETS) -> str:
    lines = []
    for bullet in playbook.live_bullets()[:limit]:
        marker = "AVOID" if bullet.is_negative else "RULE"
        lines.append(f"- [{bullet.id}] ({bullet.category}, {marker}) {bullet.content}")
    return "\n".join(lines) or "None"


def format_delta_prompt(
    session_path: str,
    diary: str,
    playbook: Playbook,
    previous: list[PlaybookDelta],
    iteration: int,
) -> tuple[str, str]:
    """Format the delta generation prompt.

    Returns:
        tuple: (system_prompt, user_prompt)
    """
    previous_str = (
        json.dumps([d.model_dump(exclude_none=True) for d in previous], indent=1)
        if previous
        else "None"
    )
    user_prompt = DELTA_USER_TEMPLATE.format(
        session_path=session_path,
        diary=diary,
        bullet_count=len(playbook.live_bullets()),
        playbook_summary=summarize_playbook(playbook),
        iteration=iteration,
        previous=previous_str,
    )
    return DELTA_SYSTEM_PROMPT, user_prompt


def format_validator_prompt(rule: str, evidence: list[tuple[str, str]]) -> tuple[str, str]:
    """Format the rule validation prompt from (source_path, snippet) pairs."""
    evidence_str = "\n---\n".join(
        f'Session: {path}\nSnippet: "{snippet}"' for path, snippet in evidence
    ) or "None"
    return (
        VALIDATOR_SYSTEM_PROMPT,
        VALIDATOR_USER_TEMPLATE.format(rule=rule, hit_count=len(evidence), evidence=evidence_str),
    )
