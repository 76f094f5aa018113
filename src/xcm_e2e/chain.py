"""Chain descriptors: definition, validation and pure extension."""

from __future__ import annotations

import dataclasses
import os
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Optional, Union

import yaml

from .config import DEFAULT_CHAIN_TIMEOUT_MS
from .errors import ErrorCode, HarnessError
from .types import AsyncBacking, BlockProvider, ChainDescriptor, ChainEd, ChainProperties

_DESCRIPTOR_FIELDS = frozenset(f.name for f in dataclasses.fields(ChainDescriptor))
_PROPERTY_FIELDS = frozenset(f.name for f in dataclasses.fields(ChainProperties))


def freeze(value: Any) -> Any:
    """Recursively turn dicts into read-only mappings and lists into tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: freeze(v) for k, v in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze(v) for v in value)
    return value


def thaw(value: Any) -> Any:
    """Inverse of :func:`freeze`, producing plain dicts and lists."""
    if isinstance(value, Mapping):
        return {k: thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [thaw(v) for v in value]
    return value


def _merge(base: Any, patch: Any) -> Any:
    if isinstance(base, Mapping) and isinstance(patch, Mapping):
        merged = dict(base)
        for key, value in patch.items():
            merged[key] = _merge(base[key], value) if key in base else value
        return merged
    return patch


def _env_endpoints(upper_name: str) -> Optional[tuple[str, ...]]:
    raw = os.environ.get(f"{upper_name}_ENDPOINT")
    if not raw:
        return None
    return tuple(e.strip() for e in raw.split(",") if e.strip())


def _env_int(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    return int(raw)


def validate(descriptor: ChainDescriptor) -> ChainDescriptor:
    """Raise ``INVALID_DESCRIPTOR`` unless the descriptor is well formed."""
    if not descriptor.name:
        raise HarnessError(ErrorCode.INVALID_DESCRIPTOR, "chain name must not be empty")
    if not descriptor.endpoints or not all(descriptor.endpoints):
        raise HarnessError(ErrorCode.INVALID_DESCRIPTOR, f"{descriptor.name}: at least one endpoint required")
    if descriptor.is_relay and descriptor.para_id is not None:
        raise HarnessError(
            ErrorCode.INVALID_DESCRIPTOR, f"{descriptor.name}: relay chains cannot have a para_id"
        )
    if not descriptor.is_relay and descriptor.para_id is None:
        raise HarnessError(
            ErrorCode.INVALID_DESCRIPTOR, f"{descriptor.name}: para_id required for non-relay chains"
        )
    if descriptor.para_id is not None and descriptor.para_id < 0:
        raise HarnessError(ErrorCode.INVALID_DESCRIPTOR, f"{descriptor.name}: para_id must be non-negative")
    if descriptor.is_relay and descriptor.properties.async_backing is not None:
        raise HarnessError(
            ErrorCode.INVALID_DESCRIPTOR, f"{descriptor.name}: async_backing only applies to parachains"
        )
    return descriptor


def _build_properties(is_relay: bool, properties: Union[ChainProperties, Mapping[str, Any], None]) -> ChainProperties:
    if isinstance(properties, ChainProperties):
        props = properties
    else:
        props = ChainProperties(**_coerce_properties(properties or {}))
    if is_relay and not props.reserve_assets:
        props = dataclasses.replace(props, reserve_assets=(props.native_asset,))
    if not is_relay and props.async_backing is None:
        props = dataclasses.replace(props, async_backing=AsyncBacking.ENABLED)
    return props


def _coerce_properties(raw: Mapping[str, Any]) -> dict[str, Any]:
    unknown = set(raw) - _PROPERTY_FIELDS
    if unknown:
        raise HarnessError(ErrorCode.INVALID_DESCRIPTOR, f"unknown chain properties: {sorted(unknown)}")
    values = dict(raw)
    for key in ("scheduler_block_provider", "proxy_block_provider"):
        if isinstance(values.get(key), str):
            values[key] = BlockProvider(values[key])
    if isinstance(values.get("chain_ed"), str):
        values["chain_ed"] = ChainEd(values["chain_ed"])
    if isinstance(values.get("async_backing"), str):
        values["async_backing"] = AsyncBacking(values["async_backing"])
    if "reserve_assets" in values:
        values["reserve_assets"] = tuple(values["reserve_assets"])
    return values


def define_chain(
    name: str,
    endpoint: Union[str, Iterable[str]],
    *,
    is_relay: bool = False,
    para_id: Optional[int] = None,
    properties: Union[ChainProperties, Mapping[str, Any], None] = None,
    custom: Optional[Mapping[str, Any]] = None,
    init_storages: Optional[Mapping[str, Any]] = None,
    block_number: Optional[int] = None,
    timeout_ms: int = DEFAULT_CHAIN_TIMEOUT_MS,
) -> ChainDescriptor:
    """Define a chain, honouring ``<NAME>_ENDPOINT`` and ``<NAME>_BLOCK_NUMBER``.

    Example::

        polkadot = define_chain("polkadot", "memory://polkadot", is_relay=True,
                                properties={"native_asset": "DOT"})
    """
    upper = name.upper()
    endpoints = (endpoint,) if isinstance(endpoint, str) else tuple(endpoint)
    env_block = _env_int(f"{upper}_BLOCK_NUMBER")

    descriptor = ChainDescriptor(
        name=name,
        endpoints=_env_endpoints(upper) or endpoints,
        is_relay=is_relay,
        para_id=para_id,
        properties=_build_properties(is_relay, properties),
        custom=freeze(custom or {}),
        init_storages=freeze(init_storages or {}),
        block_number=env_block if env_block is not None else block_number,
        timeout_ms=timeout_ms,
    )
    return validate(descriptor)


def extend(base: ChainDescriptor, patch: Mapping[str, Any]) -> ChainDescriptor:
    """Return a new descriptor with ``patch`` merged over ``base``.

    Mapping fields (``custom``, ``init_storages``) merge recursively,
    ``properties`` merges field by field, other known fields are replaced and
    unknown keys are added to ``extras``. ``base`` is left untouched.
    """
    changes: dict[str, Any] = {}
    extras = thaw(base.extras)

    for key, value in patch.items():
        if key == "properties":
            if isinstance(value, ChainProperties):
                changes[key] = value
            else:
                changes[key] = dataclasses.replace(base.properties, **_coerce_properties(value))
        elif key in ("custom", "init_storages"):
            changes[key] = freeze(_merge(thaw(getattr(base, key)), thaw(value)))
        elif key == "endpoints":
            changes[key] = (value,) if isinstance(value, str) else tuple(value)
        elif key in _DESCRIPTOR_FIELDS:
            changes[key] = value
        else:
            extras = _merge(extras, {key: thaw(value)})

    changes["extras"] = freeze(extras)
    return validate(dataclasses.replace(base, **changes))


def load_chains(path: Union[str, Path]) -> dict[str, ChainDescriptor]:
    """Load a YAML chain table.

    The file holds a top-level ``chains`` list; each entry takes the keyword
    arguments of :func:`define_chain` plus ``name`` and ``endpoint``.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    chains: dict[str, ChainDescriptor] = {}
    for entry in data.get("chains", []):
        entry = dict(entry)
        try:
            name = entry.pop("name")
            endpoint = entry.pop("endpoint")
        except KeyError as e:
            raise HarnessError(ErrorCode.INVALID_DESCRIPTOR, f"chain entry missing {e.args[0]!r}") from None
        if name in chains:
            raise HarnessError(ErrorCode.DUPLICATE_CHAIN, f"chain {name!r} defined twice")
        try:
            chains[name] = define_chain(name, endpoint, **entry)
        except TypeError as e:
            raise HarnessError(ErrorCode.INVALID_DESCRIPTOR, f"{name}: {e}") from None
    return chains
