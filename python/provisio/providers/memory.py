"""
provisio/providers/memory.py

An in-process simulated cloud. It models the same resource kinds as the AWS
provider, assigns ids and public addresses, enforces that referenced objects
exist and refuses to delete objects that others still reference (like a real
cloud's DependencyViolation). Used for dry runs and tests.

Faults can be injected per (address, operation) to exercise retry and failure
handling, and an artificial latency turns every call into a real suspension point.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Mapping, Optional, Tuple

from provisio.errors import ProviderFatalError
from provisio.providers.base import Provider, ResourceHandler

logger = logging.getLogger(__name__)


class MemoryCloud:
    """Backing store shared by all memory handlers of one provider."""

    def __init__(self, latency: float = 0.0) -> None:
        self.objects: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.latency = latency
        self._faults: Dict[Tuple[str, str], Deque[Exception]] = defaultdict(deque)
        self._counter = 0
        self._in_flight = 0
        self.max_in_flight = 0

    def inject(self, address: str, operation: str, *errors: Exception) -> None:
        """Queue errors to be raised by the next calls of `operation` on `address`."""
        self._faults[(address, operation)].extend(errors)

    def next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter:08x}"

    def next_ip(self) -> str:
        return f"203.0.113.{(self._counter % 254) + 1}"

    def referrers(self, object_id: str) -> List[str]:
        """Ids of objects whose attributes mention `object_id`."""
        return [
            oid
            for oid, (_, attrs) in self.objects.items()
            if oid != object_id and _mentions(attrs, object_id)
        ]

    async def enter(self, address: str, operation: str) -> None:
        self.calls.append((operation, address))
        self._in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self._in_flight)
        try:
            if self.latency:
                await asyncio.sleep(self.latency)
            queue = self._faults.get((address, operation))
            if queue:
                raise queue.popleft()
        except BaseException:
            self._in_flight -= 1
            raise

    def leave(self) -> None:
        self._in_flight -= 1


def _mentions(value: Any, object_id: str) -> bool:
    if isinstance(value, str):
        return value == object_id
    if isinstance(value, dict):
        return any(_mentions(v, object_id) for k, v in value.items() if k != "id")
    if isinstance(value, list):
        return any(_mentions(v, object_id) for v in value)
    return False


class MemoryHandler(ResourceHandler):
    """Generic handler for one simulated kind."""

    prefix: str = "obj"
    references: Mapping[str, str] = {}

    def __init__(self, cloud: MemoryCloud) -> None:
        self.cloud = cloud

    def extra_attributes(self, object_id: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        return {}

    def _check_references(self, address: str, operation: str, attrs: Dict[str, Any]) -> None:
        for attr, kind in self.references.items():
            value = attrs.get(attr)
            if value is None:
                continue
            for ref_id in value if isinstance(value, list) else [value]:
                found = self.cloud.objects.get(ref_id)
                if found is None or found[0] != kind:
                    raise ProviderFatalError(
                        address, operation, f"{attr}: {kind} '{ref_id}' does not exist"
                    )

    async def create(self, address: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        await self.cloud.enter(address, "create")
        try:
            self._check_references(address, "create", attrs)
            object_id = self.cloud.next_id(self.prefix)
            assigned = {"id": object_id, **self.extra_attributes(object_id, attrs)}
            self.cloud.objects[object_id] = (self.kind, {**attrs, **assigned})
            logger.debug("memory: created %s as %s", address, object_id)
            return assigned
        finally:
            self.cloud.leave()

    async def read(self, address: str, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        await self.cloud.enter(address, "read")
        try:
            found = self.cloud.objects.get(attrs.get("id", ""))
            return dict(found[1]) if found else None
        finally:
            self.cloud.leave()

    async def update(
        self, address: str, prior: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        await self.cloud.enter(address, "update")
        try:
            object_id = prior.get("id", "")
            if object_id not in self.cloud.objects:
                raise ProviderFatalError(address, "update", f"'{object_id}' does not exist")
            self._check_references(address, "update", attrs)
            kind, current = self.cloud.objects[object_id]
            assigned = {k: v for k, v in current.items() if k not in attrs}
            self.cloud.objects[object_id] = (kind, {**current, **attrs})
            return assigned
        finally:
            self.cloud.leave()

    async def delete(self, address: str, attrs: Dict[str, Any]) -> None:
        await self.cloud.enter(address, "delete")
        try:
            object_id = attrs.get("id", "")
            if object_id not in self.cloud.objects:
                return
            referrers = self.cloud.referrers(object_id)
            if referrers:
                raise ProviderFatalError(
                    address,
                    "delete",
                    f"DependencyViolation: '{object_id}' is still used by {', '.join(referrers)}",
                )
            del self.cloud.objects[object_id]
        finally:
            self.cloud.leave()


class NetworkHandler(MemoryHandler):
    kind = "network"
    prefix = "vpc"
    immutable = frozenset({"cidr_block"})


class SubnetHandler(MemoryHandler):
    kind = "subnet"
    prefix = "subnet"
    immutable = frozenset({"network_id", "cidr_block", "availability_zone"})
    references = {"network_id": "network"}


class InternetGatewayHandler(MemoryHandler):
    kind = "internet_gateway"
    prefix = "igw"
    immutable = frozenset({"network_id"})
    references = {"network_id": "network"}


class RouteTableHandler(MemoryHandler):
    kind = "route_table"
    prefix = "rtb"
    immutable = frozenset({"network_id"})
    references = {"network_id": "network"}


class RouteHandler(MemoryHandler):
    kind = "route"
    prefix = "r"
    immutable = frozenset({"route_table_id", "destination_cidr_block", "gateway_id"})
    references = {"route_table_id": "route_table", "gateway_id": "internet_gateway"}


class RouteTableAssociationHandler(MemoryHandler):
    kind = "route_table_association"
    prefix = "rtbassoc"
    immutable = frozenset({"subnet_id", "route_table_id"})
    references = {"subnet_id": "subnet", "route_table_id": "route_table"}


class SecurityGroupHandler(MemoryHandler):
    kind = "security_group"
    prefix = "sg"
    immutable = frozenset({"network_id", "name", "description"})
    references = {"network_id": "network"}


class KeyPairHandler(MemoryHandler):
    kind = "key_pair"
    prefix = "key"
    immutable = frozenset({"key_name", "public_key"})

    def extra_attributes(self, object_id: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        material = str(attrs.get("public_key", "")).encode("utf-8")
        return {"fingerprint": hashlib.sha256(material).hexdigest()}


class InstanceHandler(MemoryHandler):
    kind = "instance"
    prefix = "i"
    immutable = frozenset(
        {"ami", "instance_type", "subnet_id", "key_name", "user_data", "root_block_device"}
    )
    references = {"subnet_id": "subnet", "security_group_ids": "security_group"}

    def extra_attributes(self, object_id: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        public_ip = self.cloud.next_ip()
        return {
            "public_ip": public_ip,
            "private_ip": public_ip.replace("203.0.113.", "10.0.1.", 1),
            "public_dns": f"ec2-{public_ip.replace('.', '-')}.compute.example.internal",
            "state": "running",
        }


HANDLER_TYPES = (
    NetworkHandler,
    SubnetHandler,
    InternetGatewayHandler,
    RouteTableHandler,
    RouteHandler,
    RouteTableAssociationHandler,
    SecurityGroupHandler,
    KeyPairHandler,
    InstanceHandler,
)


class MemoryProvider(Provider):
    """Provider backed by a MemoryCloud."""

    def __init__(self, cloud: Optional[MemoryCloud] = None, latency: float = 0.0) -> None:
        self.cloud = cloud or MemoryCloud(latency=latency)
        super().__init__("memory", [cls(self.cloud) for cls in HANDLER_TYPES])


def build_memory_provider(options: Dict[str, Any]) -> MemoryProvider:
    return MemoryProvider(latency=float(options.get("latency", 0.0)))
