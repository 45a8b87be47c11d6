from __future__ import annotations

import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from billing_core.core.errors import ConcurrentConflict
from billing_core.core.settings import S, Settings
from billing_core.core.tables import T
from billing_core.core.time import now_ts
from billing_core.metrics import OCC_CONFLICTS
from billing_core.models import EntitlementSet, Subscription
from billing_core.services.audit import audit_event
from billing_core.services.store import IF_ABSENT, IF_VERSION, ddb_get, ddb_put
from billing_core.services.subscription_repo import subscriptions_for_user

FeatureSet = Dict[str, bool]

# "provider" or "provider:platform" -> granted features
DEFAULT_TEMPLATES: Dict[str, FeatureSet] = {
    "stripe": {"one_to_one": True},
    "iap": {"group_replay": True},
    "iap:android": {"group_replay": True, "android_no_replay": True},
    "tazapay": {"one_to_one": True},
    "wise": {},
}


class FeatureTemplates:
    """Policy mapping from provider/platform to the features a subscription grants."""

    def __init__(self, templates: Optional[Mapping[str, Mapping[str, Any]]] = None) -> None:
        source = DEFAULT_TEMPLATES if templates is None else templates
        self.templates: Dict[str, FeatureSet] = {
            str(k).lower(): {str(f): bool(v) for f, v in (features or {}).items()} for k, features in source.items()
        }

    @classmethod
    def from_json(cls, raw: str) -> "FeatureTemplates":
        if not raw.strip():
            return cls()
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("ENTITLEMENT_TEMPLATES must be a JSON object")
        return cls(data)

    def features_for(self, provider: str, platform_metadata: Optional[Mapping[str, Any]] = None) -> FeatureSet:
        provider = (provider or "").lower()
        platform = str((platform_metadata or {}).get("platform") or "").lower()
        if platform and f"{provider}:{platform}" in self.templates:
            return dict(self.templates[f"{provider}:{platform}"])
        return dict(self.templates.get(provider, {}))

    def known_features(self) -> List[str]:
        names = set()
        for features in self.templates.values():
            names.update(features)
        return sorted(names)


def union_features(subscriptions: Iterable[Subscription], templates: FeatureTemplates) -> FeatureSet:
    """Per-feature OR over every subscription still contributing access; every known feature is present."""
    features: FeatureSet = {name: False for name in templates.known_features()}
    for sub in subscriptions:
        if not sub.contributes_entitlements:
            continue
        for name, granted in templates.features_for(sub.provider.value, sub.provider_metadata).items():
            features[name] = features.get(name, False) or granted
    return features


class EntitlementProjector:
    def __init__(
        self,
        templates: Optional[FeatureTemplates] = None,
        *,
        reader: Callable[[str], List[Subscription]] = subscriptions_for_user,
        table: Any = None,
        settings: Settings = S,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.templates = templates or FeatureTemplates.from_json(settings.entitlement_templates)
        self.reader = reader
        self._table_override = table
        self.settings = settings
        self.clock = clock

    @property
    def table(self) -> Any:
        return self._table_override if self._table_override is not None else T.entitlements

    def get(self, user_id: str) -> Optional[EntitlementSet]:
        item = ddb_get(self.table, f"USER#{user_id}", "ENTITLEMENTS")
        return EntitlementSet.from_item(item) if item else None

    def has_feature(self, user_id: str, feature: str) -> bool:
        current = self.get(user_id)
        return bool(current and current.features.get(feature))

    def _load(self, user_id: str, overlay: Iterable[Subscription]) -> List[Subscription]:
        subs = {s.id: s for s in self.reader(user_id)}
        # The user index is eventually consistent; a record we just wrote wins over an older copy
        for fresh in overlay:
            seen = subs.get(fresh.id)
            if seen is None or seen.version < fresh.version:
                subs[fresh.id] = fresh
        return list(subs.values())

    def project(self, user_id: str, overlay: Iterable[Subscription] = ()) -> EntitlementSet:
        overlay = list(overlay)
        for _ in range(self.settings.occ_max_retries + 1):
            # Version first: any projection committed after this read fails our write below
            current = self.get(user_id)
            features = union_features(self._load(user_id, overlay), self.templates)
            if current is not None and current.features == features:
                return current

            new = EntitlementSet(
                user_id=user_id,
                features=features,
                updated_at=self.clock(),
                version=(current.version + 1) if current else 1,
            )
            if current is None:
                ok = ddb_put(self.table, new.to_item(), condition_expression=IF_ABSENT)
            else:
                ok = ddb_put(
                    self.table,
                    new.to_item(),
                    condition_expression=IF_VERSION,
                    names={"#ver": "version"},
                    values={":ver": current.version},
                )
            if ok:
                audit_event(
                    "entitlements_projected",
                    user_id,
                    outcome="success",
                    granted=sorted(k for k, v in features.items() if v),
                    version=new.version,
                )
                return new
            OCC_CONFLICTS.labels(record="entitlements").inc()

        raise ConcurrentConflict("entitlement projection kept conflicting", user_id=user_id)
