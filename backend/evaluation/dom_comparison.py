"""Structural comparison of DOM snapshots.

Children are aligned level by level. In the default (fuzzy) mode the tag
sequences are aligned on their longest common subsequence, so a single
inserted or removed element leaves the rest of its siblings aligned; any
leftovers are then paired by tag in document order. Strict mode pairs
children purely by position and scores a tag mismatch as a miss.

Every aligned pair contributes a local similarity (mean of tag equality,
attribute similarity and text similarity). Unmatched elements and all of
their descendants contribute 0. The score is the mean over every node below
the root, scaled to 0-100.
"""

import logging
from dataclasses import dataclass, field
from itertools import zip_longest

from rapidfuzz.distance import Indel, Levenshtein

from .models import Dimension, DimensionScore, Finding, SerializedNode, TagRule

logger = logging.getLogger(__name__)

# Local similarity below this on a matched pair is worth reporting.
_REPORT_BELOW = 0.999


@dataclass
class _Tally:
    similarities: list[float] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)


def _label(node: SerializedNode) -> str:
    label = node.tag
    if node.attributes.get("id"):
        label += f"#{node.attributes['id']}"
    classes = sorted(node.classes)
    if classes:
        label += "." + ".".join(classes)
    return label


def _style_declarations(style: str) -> frozenset[str]:
    decls = set()
    for raw in style.split(";"):
        if ":" not in raw:
            continue
        prop, _, value = raw.partition(":")
        decls.add(f"{prop.strip().lower()}:{' '.join(value.split()).lower()}")
    return frozenset(decls)


def _jaccard(a: frozenset | set, b: frozenset | set) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def attribute_similarity(a: SerializedNode, b: SerializedNode) -> float:
    """Key overlap blended with agreement of the shared values.

    ``class`` compares as a set of tokens and ``style`` as a set of
    declarations, so reordering either is free.
    """
    keys_a, keys_b = set(a.attributes), set(b.attributes)
    key_score = _jaccard(keys_a, keys_b)
    shared = keys_a & keys_b
    if not shared:
        return key_score

    agreement = 0.0
    for key in shared:
        va, vb = a.attributes[key], b.attributes[key]
        if key == "class":
            agreement += _jaccard(set(va.split()), set(vb.split()))
        elif key == "style":
            agreement += _jaccard(_style_declarations(va), _style_declarations(vb))
        else:
            agreement += 1.0 if " ".join(va.split()) == " ".join(vb.split()) else 0.0
    return (key_score + agreement / len(shared)) / 2


def text_similarity(a: SerializedNode, b: SerializedNode) -> float:
    """1 - normalized Levenshtein distance of the element's own text."""
    ta = " ".join(" ".join(run.split()) for run in a.text_runs)
    tb = " ".join(" ".join(run.split()) for run in b.text_runs)
    return Levenshtein.normalized_similarity(ta, tb)


def node_similarity(a: SerializedNode, b: SerializedNode) -> float:
    tag_score = 1.0 if a.tag == b.tag else 0.0
    return (tag_score + attribute_similarity(a, b) + text_similarity(a, b)) / 3


def _align(
    candidates: list[SerializedNode],
    expected: list[SerializedNode],
    strict: bool,
) -> list[tuple[int | None, int | None]]:
    """Pair child indices; ``None`` on one side marks an unmatched child."""
    if strict:
        return [
            (i if i < len(candidates) else None, i if i < len(expected) else None)
            for i, _ in enumerate(zip_longest(candidates, expected))
        ]

    cand_tags = [c.tag for c in candidates]
    exp_tags = [e.tag for e in expected]
    pairs: list[tuple[int | None, int | None]] = []
    for op in Indel.opcodes(cand_tags, exp_tags):
        if op.tag == "equal":
            pairs.extend(zip(range(op.src_start, op.src_end), range(op.dest_start, op.dest_end)))

    # Leftovers: pair by tag in document order (handles swapped siblings).
    used_c = {i for i, _ in pairs}
    used_e = {j for _, j in pairs}
    for j, exp in enumerate(expected):
        if j in used_e:
            continue
        for i, cand in enumerate(candidates):
            if i not in used_c and cand.tag == exp.tag:
                pairs.append((i, j))
                used_c.add(i)
                used_e.add(j)
                break

    pairs.extend((None, j) for j in range(len(expected)) if j not in used_e)
    pairs.extend((i, None) for i in range(len(candidates)) if i not in used_c)
    # Report in expected-document order, extras last.
    pairs.sort(key=lambda p: (p[1] if p[1] is not None else float("inf"), p[0] if p[0] is not None else -1))
    return pairs


def _unmatched(node: SerializedNode, path: str, kind: str, tally: _Tally):
    count = node.node_count()
    tally.similarities.extend([0.0] * count)
    if kind == "missing_element":
        message = f"Missing <{node.tag}> element at {path}"
        tally.findings.append(Finding(kind=kind, message=message, path=path, expected=_label(node), score=0.0))
    else:
        message = f"Unexpected <{node.tag}> element at {path}"
        tally.findings.append(Finding(kind=kind, message=message, path=path, actual=_label(node), score=0.0))
    if count > 1:
        logger.debug(f"[DOM] {kind} at {path} covers {count} nodes")


def _compare_children(
    candidate: SerializedNode,
    expected: SerializedNode,
    path: str,
    strict: bool,
    tally: _Tally,
):
    for ci, ei in _align(candidate.children, expected.children, strict):
        if ci is None:
            child = expected.children[ei]
            _unmatched(child, f"{path} > {_label(child)}", "missing_element", tally)
            continue
        if ei is None:
            child = candidate.children[ci]
            _unmatched(child, f"{path} > {_label(child)}", "extra_element", tally)
            continue

        cand_child = candidate.children[ci]
        exp_child = expected.children[ei]
        child_path = f"{path} > {_label(exp_child)}"

        if cand_child.tag != exp_child.tag:
            # Only strict mode pairs different tags.
            tally.findings.append(Finding(
                kind="tag_mismatch",
                message=f"Expected <{exp_child.tag}> but found <{cand_child.tag}> at {child_path}",
                path=child_path,
                expected=exp_child.tag,
                actual=cand_child.tag,
                score=0.0,
            ))
            tally.similarities.append(0.0)
            for grandchild in exp_child.children:
                _unmatched(grandchild, f"{child_path} > {_label(grandchild)}", "missing_element", tally)
            continue

        _compare_pair(cand_child, exp_child, child_path, strict, tally)


def _compare_pair(
    candidate: SerializedNode,
    expected: SerializedNode,
    path: str,
    strict: bool,
    tally: _Tally,
):
    attr_score = attribute_similarity(candidate, expected)
    text_score = text_similarity(candidate, expected)
    local = (1.0 + attr_score + text_score) / 3
    tally.similarities.append(local)

    if attr_score < _REPORT_BELOW:
        tally.findings.append(Finding(
            kind="attribute_mismatch",
            message=f"Attributes differ on {path}",
            path=path,
            expected=dict(sorted(expected.attributes.items())),
            actual=dict(sorted(candidate.attributes.items())),
            score=round(local * 100, 2),
        ))
    if text_score < _REPORT_BELOW:
        tally.findings.append(Finding(
            kind="text_mismatch",
            message=f"Text differs on {path}",
            path=path,
            expected=" ".join(expected.text_runs),
            actual=" ".join(candidate.text_runs),
            score=round(local * 100, 2),
        ))

    _compare_children(candidate, expected, path, strict, tally)


def compare_dom(
    candidate: SerializedNode,
    expected: SerializedNode,
    *,
    strict: bool = False,
    weight: float = 0.0,
    min_score: float | None = None,
) -> DimensionScore:
    """
    Compute structural similarity between two DOM snapshots.

    Args:
        candidate: Snapshot of the learner's render
        expected: Snapshot of the reference render
        strict: Pair children by position only, no fuzzy realignment
        weight: Weight to attach to the resulting dimension score
        min_score: Per-dimension minimum used for the passed flag

    Returns:
        DimensionScore for the structure dimension
    """
    tally = _Tally()
    root_path = _label(expected)

    # Text sitting directly in body next to elements is scored like any node's own text.
    has_children = bool(candidate.children or expected.children)
    if has_children and (candidate.text_runs or expected.text_runs):
        root_text = text_similarity(candidate, expected)
        tally.similarities.append(root_text)
        if root_text < _REPORT_BELOW:
            tally.findings.append(Finding(
                kind="text_mismatch",
                message=f"Text differs on {root_path}",
                path=root_path,
                expected=" ".join(expected.text_runs),
                actual=" ".join(candidate.text_runs),
                score=round(root_text * 100, 2),
            ))

    _compare_children(candidate, expected, root_path, strict, tally)

    if tally.similarities:
        score = 100.0 * sum(tally.similarities) / len(tally.similarities)
    else:
        # Both roots are empty; only the roots themselves can differ.
        score = 100.0 * node_similarity(candidate, expected)

    score = round(max(0.0, min(100.0, score)), 2)
    logger.info(
        f"[DOM] structure score {score:.2f} over {len(tally.similarities)} nodes "
        f"({len(tally.findings)} findings, strict={strict})"
    )
    return DimensionScore(
        name=Dimension.STRUCTURE,
        score=score,
        weight=weight,
        passed=min_score is None or score >= min_score,
        details=tally.findings,
    )


def _matches_rule(node: SerializedNode, rule: TagRule) -> bool:
    if node.tag != rule.tag.lower():
        return False
    for key, value in (rule.attributes or {}).items():
        key = key.lower()
        if key not in node.attributes:
            return False
        if not value:
            continue
        if key == "class":
            if not set(value.split()) <= node.classes:
                return False
        elif " ".join(node.attributes[key].split()) != " ".join(value.split()):
            return False
    if rule.text:
        text = " ".join(node.all_text())
        if " ".join(rule.text.split()).lower() not in " ".join(text.split()).lower():
            return False
    return True


def evaluate_tag_rules(
    candidate: SerializedNode,
    rules: list[TagRule],
    *,
    weight: float = 0.0,
    min_score: float | None = None,
) -> DimensionScore:
    """Score the candidate against challenge tag rules (the ``tag`` dimension)."""
    findings: list[Finding] = []
    passed_rules = 0
    for rule in rules:
        count = sum(1 for node in candidate.iter_nodes() if _matches_rule(node, rule))
        ok = count >= rule.min_count and (rule.max_count is None or count <= rule.max_count)
        passed_rules += ok
        findings.append(Finding(
            kind="tag_rule",
            message=f"{'Found' if ok else 'Expected'} {rule.describe()}; found {count}",
            expected=rule.describe(),
            actual=count,
            score=100.0 if ok else 0.0,
        ))

    score = 100.0 * passed_rules / len(rules) if rules else 100.0
    score = round(score, 2)
    return DimensionScore(
        name=Dimension.TAG,
        score=score,
        weight=weight,
        passed=min_score is None or score >= min_score,
        details=findings,
    )
