"""Shared document builders for the tokenlayer tests."""

from __future__ import annotations

import copy
from typing import Any

import pytest

from tokenlayer.core import CoreDocument

SYSTEM_ID = "acme-ds"
REPO = "acme/tokens"


def _base_core() -> dict[str, Any]:
    return {
        "systemId": SYSTEM_ID,
        "systemName": "Acme",
        "version": "1.0.0",
        "dimensions": [
            {
                "id": "color-scheme",
                "displayName": "Color scheme",
                "modes": [{"id": "light", "name": "Light"}, {"id": "dark", "name": "Dark"}],
                "defaultMode": "light",
                "required": True,
            },
            {
                "id": "density",
                "displayName": "Density",
                "modes": [{"id": "compact", "name": "Compact"}, {"id": "comfortable", "name": "Comfortable"}],
                "defaultMode": "comfortable",
            },
        ],
        "dimensionOrder": ["color-scheme", "density"],
        "tokenCollections": [{"id": "colors", "name": "Colors"}],
        "resolvedValueTypes": [{"id": "color"}, {"id": "spacing"}],
        "taxonomies": [{"id": "category"}],
        "namingRules": {"taxonomyOrder": ["category"]},
        "platforms": [
            {
                "id": "ios",
                "displayName": "iOS",
                "extensionSource": {"repositoryUri": REPO, "filePath": "platforms/ios.json"},
            },
            {
                "id": "android",
                "displayName": "Android",
                "extensionSource": {"repositoryUri": REPO, "filePath": "platforms/android.json"},
            },
        ],
        "themes": [
            {
                "id": "brand",
                "displayName": "Brand",
                "overrideSource": {"repositoryUri": REPO, "filePath": "themes/brand.json"},
            }
        ],
        "tokens": [
            {
                "id": "T1",
                "displayName": "Primary",
                "resolvedValueTypeId": "color",
                "tokenCollectionId": "colors",
                "themeable": True,
                "valuesByMode": [
                    {"modeIds": ["light"], "value": "#000"},
                    {"modeIds": ["dark"], "value": "#fff"},
                ],
            },
            {
                "id": "T2",
                "displayName": "Gap",
                "resolvedValueTypeId": "spacing",
                "themeable": False,
                "valuesByMode": [{"modeIds": [], "value": 4}],
            },
            {
                "id": "T3",
                "displayName": "Shadow",
                "resolvedValueTypeId": "color",
                "themeable": True,
                "valuesByMode": [{"modeIds": ["dark"], "value": "#333"}],
            },
        ],
    }


@pytest.fixture
def core_payload() -> dict[str, Any]:
    return copy.deepcopy(_base_core())


@pytest.fixture
def core_document(core_payload: dict[str, Any]) -> CoreDocument:
    return CoreDocument.model_validate(core_payload)
