"""Join topology: which latent parameters are shared across modalities."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from stjoint.errors import TopologyError

PARAMETER_CLASSES: tuple[str, ...] = ("alpha", "beta", "incode")
SHARED = "all"
PRIVATE = "private"
TAGS: tuple[str, ...] = (SHARED, PRIVATE)
DEFAULT_TAGS: dict[str, str] = {"alpha": SHARED, "beta": PRIVATE, "incode": SHARED}
IDENTITY = "identity"


@dataclass(frozen=True)
class JoinTopology:
    """Per-modality sharing tags plus the join groups they apply within.

    - ``alpha`` (sample code): ``"all"`` uses the group's shared code.
    - ``beta`` (feature code): ``"all"`` uses the group's shared code; only
      legal when the members have identical column labels.
    - ``incode`` (coupling): ``"all"`` uses the shared identity coupling,
      ``"private"`` learns a per-modality ``k x k`` matrix.

    Within one group a class tagged ``"all"`` for any member must be ``"all"``
    for every member.
    """

    tags: Mapping[str, Mapping[str, str]]
    groups: tuple[tuple[str, ...], ...] = field(default=())

    def __post_init__(self) -> None:
        if not self.tags:
            raise TopologyError("topology must declare at least one modality.")
        filled: dict[str, dict[str, str]] = {}
        for modality, classes in self.tags.items():
            unknown = sorted(set(classes) - set(PARAMETER_CLASSES))
            if unknown:
                raise TopologyError(
                    f"modality {modality!r}: unknown parameter classes {unknown}; "
                    f"expected {list(PARAMETER_CLASSES)}."
                )
            row = dict(DEFAULT_TAGS)
            for cls, tag in classes.items():
                if tag not in TAGS:
                    raise TopologyError(
                        f"modality {modality!r}: tag for {cls!r} must be one of {list(TAGS)}, got {tag!r}."
                    )
                row[cls] = str(tag)
            filled[str(modality)] = row
        object.__setattr__(self, "tags", filled)

        groups = tuple(tuple(str(m) for m in g) for g in self.groups)
        if not groups:
            groups = (tuple(filled),)
        seen: dict[str, int] = {}
        for gi, members in enumerate(groups):
            if not members:
                raise TopologyError(f"join group {gi} is empty.")
            for m in members:
                if m not in filled:
                    raise TopologyError(f"join group {gi} names unknown modality {m!r}.")
                if m in seen:
                    raise TopologyError(f"modality {m!r} appears in join groups {seen[m]} and {gi}.")
                seen[m] = gi
        missing = sorted(set(filled) - set(seen))
        if missing:
            raise TopologyError(f"modalities {missing} are not assigned to any join group.")
        object.__setattr__(self, "groups", groups)
        self._check_group_consistency()

    def _check_group_consistency(self) -> None:
        for gi, members in enumerate(self.groups):
            for cls in PARAMETER_CLASSES:
                shared = [m for m in members if self.tags[m][cls] == SHARED]
                if shared and len(shared) != len(members):
                    private = [m for m in members if m not in shared]
                    raise TopologyError(
                        f"join group {gi}: {cls!r} is 'all' for {shared} but private for {private}."
                    )

    @classmethod
    def shared_codes(cls, modalities: Iterable[str]) -> "JoinTopology":
        """Single group, shared sample code, private feature codes, identity coupling."""
        return cls(tags={str(m): dict(DEFAULT_TAGS) for m in modalities})

    @classmethod
    def from_dict(cls, doc: Mapping[str, Any]) -> "JoinTopology":
        """Build from ``{modality: {class: tag}}`` with an optional ``"groups"`` key."""
        payload = dict(doc)
        groups = payload.pop("groups", ())
        return cls(tags=payload, groups=tuple(tuple(g) for g in groups))

    @property
    def modalities(self) -> tuple[str, ...]:
        return tuple(self.tags)

    def group_of(self, modality: str) -> int:
        for gi, members in enumerate(self.groups):
            if modality in members:
                return gi
        raise TopologyError(f"modality {modality!r} is not part of the topology.")

    def parameter_id(self, modality: str, cls: str) -> str:
        if cls not in PARAMETER_CLASSES:
            raise TopologyError(f"unknown parameter class {cls!r}.")
        tag = self.tags[modality][cls]
        if cls == "incode":
            return IDENTITY if tag == SHARED else f"incode:{modality}"
        if tag == SHARED:
            return f"{cls}:group{self.group_of(modality)}"
        return f"{cls}:{modality}"

    def assignment(self) -> dict[str, dict[str, str]]:
        return {
            m: {cls: self.parameter_id(m, cls) for cls in PARAMETER_CLASSES}
            for m in self.modalities
        }

    def check_modalities(self, names: Iterable[str]) -> None:
        given = set(names)
        declared = set(self.modalities)
        if given != declared:
            raise TopologyError(
                f"topology declares {sorted(declared)} but data provides {sorted(given)}."
            )
