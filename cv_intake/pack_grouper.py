"""
Candidate pack grouping.

Partitions classified files into per-candidate packs using a two-pass greedy
algorithm:

1. Strong-key pass: files carrying a valid email (preferred) or phone are keyed
   on the normalized value; files sharing a key share a pack. Everything else
   is an orphan.
2. Orphan reconciliation: an orphan with a usable name joins the single pack
   whose merged name normalizes to the same value. With no match, a new
   name-keyed pack is opened when singleton packs are allowed. Orphans with no
   identity signal are never attached to a pack; they come back in
   ``GroupingResult.ungrouped`` with a reason.

Finished packs order their files cv, cover letter, application, everything
else, and are truncated to ``max_files_per_pack`` with the overflow reported in
``GroupingResult.truncated``.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Final, Iterable, Optional

from .identity import identity_key, normalize_email, normalize_name, normalize_phone
from .models import CandidatePack, ClassifiedFile, DocumentType, MergedIdentity, QuickIdentity

logger = logging.getLogger(__name__)

INSUFFICIENT_IDENTITY: Final[str] = "insufficient identity"
UNMATCHED_NAME_ONLY: Final[str] = "unmatched name-only identity"
AMBIGUOUS_NAME_ONLY: Final[str] = "ambiguous name-only identity"

DOCUMENT_PRECEDENCE: Final[dict[DocumentType, int]] = {
    DocumentType.CV: 0,
    DocumentType.COVER_LETTER: 1,
    DocumentType.APPLICATION: 2,
}
OTHER_PRECEDENCE: Final[int] = 3
PREVIEW_CHARS: Final[int] = 500


@dataclass(slots=True)
class GroupingResult:
    packs: dict[str, CandidatePack] = field(default_factory=dict)
    ungrouped: list[tuple[ClassifiedFile, str]] = field(default_factory=list)
    truncated: list[tuple[ClassifiedFile, str]] = field(default_factory=list)

    @property
    def grouped_file_count(self) -> int:
        return sum(len(pack.files) for pack in self.packs.values())


def pack_id_for(key: str) -> str:
    digest = hashlib.sha1(key.encode("utf-8")).hexdigest()
    return f"pack_{digest[:12]}"


def document_precedence(document_type: DocumentType) -> int:
    return DOCUMENT_PRECEDENCE.get(document_type, OTHER_PRECEDENCE)


def _identity_of(item: ClassifiedFile) -> QuickIdentity:
    return item.identity or QuickIdentity()


def _strong_key(identity: QuickIdentity) -> Optional[str]:
    return identity_key(email=identity.email, phone=identity.phone)


def merge_identities(files: Iterable[ClassifiedFile]) -> MergedIdentity:
    """First non-null value wins per field; skills are unioned case-insensitively."""

    merged = MergedIdentity()
    seen_skills: set[str] = set()
    for item in files:
        identity = _identity_of(item)
        if merged.email is None:
            merged.email = normalize_email(identity.email)
        if merged.phone is None and normalize_phone(identity.phone):
            merged.phone = identity.phone.strip() if identity.phone else None
        if merged.full_name is None and identity.full_name:
            merged.full_name = identity.full_name.strip()
        if merged.is_student is None and identity.is_student is not None:
            merged.is_student = identity.is_student
        for skill in identity.skills:
            cleaned = str(skill).strip()
            if cleaned and cleaned.lower() not in seen_skills:
                seen_skills.add(cleaned.lower())
                merged.skills.append(cleaned)
    return merged


def _combined_text(files: list[ClassifiedFile]) -> str:
    sections = []
    for index, item in enumerate(files, start=1):
        header = f"=== DOCUMENT {index}: {item.document_type.value.upper()} ({item.file_name}) ==="
        sections.append(f"{header}\n{item.text}")
    return "\n\n".join(sections)


def _documents_metadata(files: list[ClassifiedFile]) -> list[dict[str, str]]:
    return [
        {
            "type": item.document_type.value,
            "path": item.file_path,
            "name": item.file_name,
            "preview": item.text[:PREVIEW_CHARS],
        }
        for item in files
    ]


class _PackDraft:
    __slots__ = ("key", "files")

    def __init__(self, key: str) -> None:
        self.key = key
        self.files: list[ClassifiedFile] = []

    def merged_name(self) -> Optional[str]:
        return normalize_name(merge_identities(self.files).full_name)


def _finalize(draft: _PackDraft, max_files: int, result: GroupingResult) -> CandidatePack:
    ordered = sorted(draft.files, key=lambda item: document_precedence(item.document_type))
    kept = ordered[:max_files] if max_files > 0 else ordered
    dropped = ordered[len(kept):]
    if dropped:
        logger.warning(
            "[grouper] pack %s has %d files, keeping first %d; dropped: %s",
            draft.key,
            len(ordered),
            len(kept),
            ", ".join(item.file_name for item in dropped),
        )
        reason = f"dropped: pack exceeded {max_files} files"
        result.truncated.extend((item, reason) for item in dropped)
    return CandidatePack(
        pack_id=pack_id_for(draft.key),
        identity_key=draft.key,
        files=kept,
        identity=merge_identities(kept),
        documents=_documents_metadata(kept),
        combined_text=_combined_text(kept),
    )


def group_into_packs(
    files: Iterable[ClassifiedFile],
    *,
    max_files_per_pack: int = 10,
    allow_singleton_packs: bool = True,
) -> GroupingResult:
    """Group classified files into disjoint candidate packs."""

    result = GroupingResult()
    drafts: dict[str, _PackDraft] = {}
    orphans: list[ClassifiedFile] = []

    for item in files:
        key = _strong_key(_identity_of(item))
        if key is None:
            orphans.append(item)
            continue
        drafts.setdefault(key, _PackDraft(key)).files.append(item)

    for item in orphans:
        name = normalize_name(_identity_of(item).full_name)
        if name is None:
            logger.warning("[grouper] %s has no identity signal; leaving ungrouped", item.file_name)
            result.ungrouped.append((item, INSUFFICIENT_IDENTITY))
            continue

        matches = [draft for draft in drafts.values() if draft.merged_name() == name]
        if len(matches) == 1:
            matches[0].files.append(item)
            continue
        if len(matches) > 1:
            logger.warning(
                "[grouper] %s matches %d packs by name (%s); leaving ungrouped",
                item.file_name,
                len(matches),
                ", ".join(draft.key for draft in matches),
            )
            result.ungrouped.append((item, AMBIGUOUS_NAME_ONLY))
            continue
        if allow_singleton_packs:
            key = f"name:{name}"
            drafts[key] = _PackDraft(key)
            drafts[key].files.append(item)
            continue
        logger.warning("[grouper] %s has a name-only identity matching no pack", item.file_name)
        result.ungrouped.append((item, UNMATCHED_NAME_ONLY))

    for draft in drafts.values():
        pack = _finalize(draft, max_files_per_pack, result)
        result.packs[pack.pack_id] = pack

    logger.info(
        "[grouper] %d packs, %d files grouped, %d ungrouped, %d truncated",
        len(result.packs),
        result.grouped_file_count,
        len(result.ungrouped),
        len(result.truncated),
    )
    return result


__all__ = [
    "AMBIGUOUS_NAME_ONLY",
    "GroupingResult",
    "INSUFFICIENT_IDENTITY",
    "UNMATCHED_NAME_ONLY",
    "document_precedence",
    "group_into_packs",
    "merge_identities",
    "pack_id_for",
]
