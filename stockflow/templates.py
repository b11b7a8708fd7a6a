"""
Built-in example models
Each template is a JSON model document under template_data/
"""

from functools import lru_cache
from pathlib import Path
from typing import Dict, List
import logging

from stockflow.models import ModelDocument
from stockflow.types import TemplateInfoDict
from stockflow.utils.model_utils import parse_model_document

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).parent / "template_data"


@lru_cache(maxsize=None)
def _load_templates() -> Dict[str, ModelDocument]:
    templates: Dict[str, ModelDocument] = {}
    for path in sorted(TEMPLATE_DIR.glob("*.json")):
        model = parse_model_document(path.read_text(encoding="utf-8"))
        templates[model.id or path.stem] = model
    logger.debug(f"Loaded {len(templates)} model template(s) from {TEMPLATE_DIR}")
    return templates


def list_templates() -> List[TemplateInfoDict]:
    """Id, name and description of every built-in model"""
    return [
        TemplateInfoDict(id=template_id, name=model.name, description=model.description)
        for template_id, model in _load_templates().items()
    ]


def get_template(template_id: str) -> ModelDocument:
    """
    Fresh copy of a built-in model

    Raises:
        KeyError: If no template has this id
    """
    return _load_templates()[template_id].model_copy(deep=True)
