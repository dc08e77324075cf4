"""
Template catalog.

Loaded once from YAML at startup and never mutated afterwards, so any number
of concurrent requests can read it without locking.
"""

from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError

from common.errors import CatalogLoadError
from common.logging import get_logger
from common.models import Complexity, DiagramTemplate, UseCase
from diagrams.syntax import normalize_type

logger = get_logger(__name__)

DEFAULT_TEMPLATES_PATH = Path(__file__).parent / "data" / "templates.yaml"


class TemplateCatalog:
    """Read-only, ordered collection of diagram templates."""

    def __init__(self, templates: Iterable[DiagramTemplate]):
        self._templates: Tuple[DiagramTemplate, ...] = tuple(templates)
        self._by_name: Dict[str, DiagramTemplate] = {t.name: t for t in self._templates}
        if len(self._by_name) != len(self._templates):
            duplicates = [n for n, c in Counter(t.name for t in self._templates).items() if c > 1]
            raise CatalogLoadError(
                f"Duplicate template names: {', '.join(duplicates)}",
                details={"duplicates": duplicates},
            )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "TemplateCatalog":
        """
        Load templates from a YAML file with a top-level ``templates`` list.

        Raises:
            CatalogLoadError: If the file is missing, unparsable, or an entry is invalid
        """
        path = Path(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise CatalogLoadError(
                f"Template file not found: {path}", details={"path": str(path)}
            ) from None
        except yaml.YAMLError as e:
            raise CatalogLoadError(
                f"Invalid YAML in {path}: {e}", details={"path": str(path)}
            ) from e

        entries = data.get("templates") if isinstance(data, dict) else None
        if not isinstance(entries, list):
            raise CatalogLoadError(
                f"{path} must contain a 'templates' list", details={"path": str(path)}
            )

        templates = []
        for index, entry in enumerate(entries):
            templates.append(cls._build_template(entry, index, path))

        catalog = cls(templates)
        logger.info(
            event="template_catalog_loaded",
            path=str(path),
            templates=len(catalog),
            types=sorted(catalog.stats()["byType"]),
        )
        return catalog

    @classmethod
    def load_default(cls, path: Optional[Union[str, Path]] = None) -> "TemplateCatalog":
        return cls.from_yaml(path or DEFAULT_TEMPLATES_PATH)

    @staticmethod
    def _build_template(entry: Any, index: int, path: Path) -> DiagramTemplate:
        if not isinstance(entry, dict):
            raise CatalogLoadError(
                f"Template #{index} in {path} is not a mapping", details={"index": index}
            )
        data = dict(entry)
        declared_type = data.get("type")
        diagram_type = normalize_type(declared_type) if isinstance(declared_type, str) else None
        if diagram_type is None:
            raise CatalogLoadError(
                f"Template #{index} in {path} has unsupported type {declared_type!r}",
                details={"index": index, "type": declared_type},
            )
        data["type"] = diagram_type
        data["tags"] = frozenset(data.get("tags") or ())
        if isinstance(data.get("code"), str):
            data["code"] = data["code"].rstrip("\n")
        try:
            return DiagramTemplate.model_validate(data)
        except ValidationError as e:
            raise CatalogLoadError(
                f"Template #{index} in {path} is invalid: {e.error_count()} error(s)",
                details={"index": index, "errors": e.errors(include_url=False)},
            ) from e

    def __len__(self) -> int:
        return len(self._templates)

    def __iter__(self) -> Iterator[DiagramTemplate]:
        return iter(self._templates)

    def get(self, name: str) -> Optional[DiagramTemplate]:
        return self._by_name.get(name)

    def list(
        self,
        diagram_type: Optional[str] = None,
        use_case: Optional[Union[str, UseCase]] = None,
        complexity: Optional[Union[str, Complexity]] = None,
    ) -> List[DiagramTemplate]:
        """
        Templates matching every given filter, simplest first.

        Omitted filters impose no constraint. Templates of equal complexity
        keep their catalog order.
        """
        wanted_type = normalize_type(diagram_type) if diagram_type is not None else None
        if diagram_type is not None and wanted_type is None:
            return []
        wanted_use_case = UseCase(use_case) if use_case is not None else None
        wanted_complexity = Complexity(complexity) if complexity is not None else None

        matches = [
            t
            for t in self._templates
            if (wanted_type is None or t.type == wanted_type)
            and (wanted_use_case is None or t.use_case == wanted_use_case)
            and (wanted_complexity is None or t.complexity == wanted_complexity)
        ]
        return sorted(matches, key=lambda t: t.complexity.rank)

    def stats(self) -> Dict[str, Any]:
        return {
            "total": len(self._templates),
            "byType": dict(Counter(t.type for t in self._templates)),
            "byComplexity": {
                c.value: sum(1 for t in self._templates if t.complexity == c) for c in Complexity
            },
            "byUseCase": dict(Counter(t.use_case.value for t in self._templates)),
        }
