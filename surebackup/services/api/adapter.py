"""
Protocol adapter over the two management API generations.

Callers use ``list``/``get``/``mutate``/``delete`` with canonical kinds,
filters and change sets; the adapter owns pagination style, concurrency
tokens and idempotency keys for the generation it speaks.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from surebackup.services.api.entities import (
    Entity,
    EntityFilter,
    EntityKind,
    TaskHandle,
    V3Normalizer,
    V4Normalizer,
)
from surebackup.services.api.errors import ApiClientError, ApiResponseError
from surebackup.services.api.transport import ApiGeneration, ApiRequestContext, ApiTransport

logger = logging.getLogger(__name__)


class ProtocolAdapter(ABC):
    """Abstract base class for generation-specific adapters."""

    generation: ApiGeneration
    paths: Dict[EntityKind, str] = {}

    def __init__(self, transport: ApiTransport, page_size: int = 100):
        """
        Initialize the adapter.

        Args:
            transport: HTTP transport shared by all calls
            page_size: Entities requested per page when listing
        """
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self.transport = transport
        self.page_size = page_size

    def path_for(self, kind: EntityKind, entity_id: Optional[str] = None) -> str:
        try:
            path = self.paths[kind]
        except KeyError:
            raise ValueError(f"{self.generation.value} adapter does not support kind '{kind.value}'")
        return f"{path}/{entity_id}" if entity_id else path

    def list(self, kind: EntityKind, entity_filter: Optional[EntityFilter] = None) -> List[Entity]:
        """
        List all entities of a kind, following pagination to the end.

        Args:
            kind: Entity kind
            entity_filter: Optional canonical filter

        Returns:
            Every matching entity, in server order, without duplicates
        """
        entities: List[Entity] = []
        seen = set()
        fetched = 0
        page = 0

        while True:
            payloads, total = self._fetch_page(kind, entity_filter, page, fetched)
            if not payloads:
                if fetched < total:
                    logger.warning(
                        f"Listing {kind.value} stopped at {fetched} of {total} reported entities: "
                        f"server returned an empty page"
                    )
                break

            fetched += len(payloads)
            for payload in payloads:
                entity = self._normalize(kind, payload)
                if entity.id in seen:
                    logger.warning(f"Skipping duplicate {kind.value} {entity.id} returned across pages")
                    continue
                seen.add(entity.id)
                entities.append(entity)

            page += 1
            if fetched >= total:
                break

        logger.debug(f"Listed {len(entities)} {kind.value} entities over {page} page(s)")
        return entities

    @abstractmethod
    def get(self, kind: EntityKind, entity_id: str) -> Entity:
        """
        Fetch one entity. For v4 the returned ``version`` is its current ETag.

        Raises:
            ApiClientError: status_code 404 when the entity does not exist
        """
        pass

    @abstractmethod
    def mutate(
        self,
        kind: EntityKind,
        body: Dict[str, Any],
        entity_id: Optional[str] = None,
        current: Optional[Entity] = None
    ) -> Optional[TaskHandle]:
        """
        Create (no entity_id) or update an entity.

        Args:
            kind: Entity kind
            body: For updates, canonical changes (e.g. {"power_state": "ON"}).
                  For creates, the request body sent as-is.
            entity_id: Entity to update
            current: Last fetched copy of the entity, used where the
                     generation carries its version in the body

        Returns:
            Handle of the asynchronous task, if the server started one
        """
        pass

    @abstractmethod
    def delete(self, kind: EntityKind, entity_id: str) -> Optional[TaskHandle]:
        """Delete an entity. Returns the server task handle, if any."""
        pass

    @abstractmethod
    def _fetch_page(
        self,
        kind: EntityKind,
        entity_filter: Optional[EntityFilter],
        page: int,
        offset: int
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Fetch one page. Returns (raw entity payloads, reported total)."""
        pass

    @abstractmethod
    def _normalize(self, kind: EntityKind, payload: Dict[str, Any], etag: Optional[str] = None) -> Entity:
        pass


class V4Adapter(ProtocolAdapter):
    """
    Generation A adapter.

    - GET with ``$page``/``$limit``; ``metadata.totalAvailableResults``
    - update/delete require the resource ETag in ``If-Match``, so every
      mutation is a fetch-then-mutate round trip
    - create/update/delete carry a fresh idempotency key per logical attempt
    """

    generation = ApiGeneration.V4
    paths = {
        EntityKind.VM: "/api/vmm/v4.0/ahv/config/vms",
        EntityKind.SUBNET: "/api/networking/v4.0/config/subnets",
        EntityKind.CLUSTER: "/api/clustermgmt/v4.0/config/clusters",
        EntityKind.TASK: "/api/prism/v4.0/config/tasks",
    }

    def __init__(self, transport: ApiTransport, page_size: int = 100):
        super().__init__(transport, page_size)
        self.normalizer = V4Normalizer()

    @staticmethod
    def build_filter(kind: EntityKind, entity_filter: Optional[EntityFilter]) -> Optional[str]:
        """Translate a canonical filter into an OData $filter expression."""
        if entity_filter is None or entity_filter.is_empty:
            return None
        clauses = []
        if entity_filter.name is not None:
            escaped = entity_filter.name.replace("'", "''")
            clauses.append(f"name eq '{escaped}'")
        if entity_filter.cluster_id is not None:
            field = "clusterReference" if kind == EntityKind.SUBNET else "cluster/extId"
            clauses.append(f"{field} eq '{entity_filter.cluster_id}'")
        return " and ".join(clauses)

    def _fetch_page(self, kind, entity_filter, page, offset):
        params: Dict[str, Any] = {"$page": page, "$limit": self.page_size}
        odata = self.build_filter(kind, entity_filter)
        if odata:
            params["$filter"] = odata

        context = ApiRequestContext(self.generation)
        response = self.transport.request("GET", self.path_for(kind), context, params=params)
        body = self.transport.decode_json(response, context)

        payloads = body.get("data") or []
        total = (body.get("metadata") or {}).get("totalAvailableResults")
        if total is None:
            # Single page responses may omit the count
            total = offset + len(payloads)
        return payloads, int(total)

    def _normalize(self, kind, payload, etag=None):
        return self.normalizer.normalize(kind, payload, etag)

    def _get_with_etag(self, kind: EntityKind, entity_id: str) -> Entity:
        context = ApiRequestContext(self.generation)
        response = self.transport.request("GET", self.path_for(kind, entity_id), context)
        body = self.transport.decode_json(response, context)
        payload = body.get("data")
        if not isinstance(payload, dict):
            raise ApiResponseError(
                f"GET {kind.value} {entity_id} returned no data object",
                correlation_id=context.correlation_id,
            )
        return self._normalize(kind, payload, response.headers.get("ETag"))

    def get(self, kind: EntityKind, entity_id: str) -> Entity:
        return self._get_with_etag(kind, entity_id)

    def _require_etag(self, entity: Entity) -> str:
        if not entity.version:
            raise ApiResponseError(
                f"{entity.kind.value} {entity.id} was returned without an ETag; "
                f"refusing to send an unconditional mutation"
            )
        return entity.version

    def mutate(self, kind, body, entity_id=None, current=None):
        if entity_id is None:
            context = ApiRequestContext.for_mutation(self.generation)
            logger.info(f"Creating {kind.value} (idempotency key {context.idempotency_key})")
            response = self.transport.request("POST", self.path_for(kind), context, json_body=body)
            return self.normalizer.task_handle(
                self.transport.decode_json(response, context), f"create {kind.value}"
            )

        # Always fetch a fresh token immediately before the mutation
        fresh = self._get_with_etag(kind, entity_id)
        etag = self._require_etag(fresh)
        update_body = self.normalizer.apply_changes(kind, fresh.raw, body)

        context = ApiRequestContext.for_mutation(self.generation, concurrency_token=etag)
        logger.info(
            f"Updating {kind.value} {entity_id} with {sorted(body)} "
            f"(idempotency key {context.idempotency_key})"
        )
        response = self.transport.request(
            "PUT", self.path_for(kind, entity_id), context, json_body=update_body
        )
        return self.normalizer.task_handle(
            self.transport.decode_json(response, context), f"update {kind.value} {entity_id}"
        )

    def delete(self, kind, entity_id):
        fresh = self._get_with_etag(kind, entity_id)
        etag = self._require_etag(fresh)

        context = ApiRequestContext.for_mutation(self.generation, concurrency_token=etag)
        logger.info(f"Deleting {kind.value} {entity_id} (idempotency key {context.idempotency_key})")
        response = self.transport.request("DELETE", self.path_for(kind, entity_id), context)
        return self.normalizer.task_handle(
            self.transport.decode_json(response, context), f"delete {kind.value} {entity_id}"
        )


class V3Adapter(ProtocolAdapter):
    """
    Generation B adapter.

    - POST ``<kind>s/list`` with ``length``/``offset``; ``metadata.total_matches``
    - concurrency control via ``metadata.spec_version`` inside the body
    """

    generation = ApiGeneration.V3
    paths = {
        EntityKind.VM: "/api/nutanix/v3/vms",
        EntityKind.SUBNET: "/api/nutanix/v3/subnets",
        EntityKind.CLUSTER: "/api/nutanix/v3/clusters",
        EntityKind.TASK: "/api/nutanix/v3/tasks",
    }

    _name_fields = {
        EntityKind.VM: "vm_name",
        EntityKind.SUBNET: "name",
        EntityKind.CLUSTER: "name",
    }

    def __init__(self, transport: ApiTransport, page_size: int = 100):
        super().__init__(transport, page_size)
        self.normalizer = V3Normalizer()

    @classmethod
    def build_filter(cls, kind: EntityKind, entity_filter: Optional[EntityFilter]) -> Optional[str]:
        """Translate a canonical filter into a FIQL expression."""
        if entity_filter is None or entity_filter.is_empty:
            return None
        clauses = []
        if entity_filter.name is not None:
            clauses.append(f"{cls._name_fields.get(kind, 'name')}=={entity_filter.name}")
        if entity_filter.cluster_id is not None:
            clauses.append(f"cluster_uuid=={entity_filter.cluster_id}")
        return ";".join(clauses)

    def _fetch_page(self, kind, entity_filter, page, offset):
        request_body: Dict[str, Any] = {
            "kind": kind.value,
            "length": self.page_size,
            "offset": offset,
        }
        fiql = self.build_filter(kind, entity_filter)
        if fiql:
            request_body["filter"] = fiql

        context = ApiRequestContext(self.generation)
        response = self.transport.request(
            "POST", f"{self.path_for(kind)}/list", context, json_body=request_body
        )
        body = self.transport.decode_json(response, context)

        payloads = body.get("entities") or []
        total = (body.get("metadata") or {}).get("total_matches")
        if total is None:
            total = offset + len(payloads)
        return payloads, int(total)

    def _normalize(self, kind, payload, etag=None):
        return self.normalizer.normalize(kind, payload, etag)

    def get(self, kind: EntityKind, entity_id: str) -> Entity:
        context = ApiRequestContext(self.generation)
        response = self.transport.request("GET", self.path_for(kind, entity_id), context)
        return self._normalize(kind, self.transport.decode_json(response, context))

    def mutate(self, kind, body, entity_id=None, current=None):
        context = ApiRequestContext(self.generation)
        if entity_id is None:
            logger.info(f"Creating {kind.value}")
            response = self.transport.request("POST", self.path_for(kind), context, json_body=body)
            return self.normalizer.task_handle(
                self.transport.decode_json(response, context), f"create {kind.value}"
            )

        if current is None or current.id != entity_id:
            current = self.get(kind, entity_id)
        update_body = self.normalizer.apply_changes(kind, current.raw, body)

        logger.info(f"Updating {kind.value} {entity_id} with {sorted(body)} (spec_version {current.version})")
        response = self.transport.request(
            "PUT", self.path_for(kind, entity_id), context, json_body=update_body
        )
        return self.normalizer.task_handle(
            self.transport.decode_json(response, context), f"update {kind.value} {entity_id}"
        )

    def delete(self, kind, entity_id):
        context = ApiRequestContext(self.generation)
        logger.info(f"Deleting {kind.value} {entity_id}")
        response = self.transport.request("DELETE", self.path_for(kind, entity_id), context)
        return self.normalizer.task_handle(
            self.transport.decode_json(response, context), f"delete {kind.value} {entity_id}"
        )


def detect_generation(transport: ApiTransport) -> ApiGeneration:
    """
    Probe the server for the newest supported generation.

    A v4 cluster listing answering 404 means the server only speaks v3; any
    other failure propagates.
    """
    context = ApiRequestContext(ApiGeneration.V4)
    try:
        transport.request(
            "GET", V4Adapter.paths[EntityKind.CLUSTER], context, params={"$limit": 1}
        )
    except ApiClientError as e:
        if e.status_code == 404:
            logger.info("Management API does not expose v4 endpoints, using v3")
            return ApiGeneration.V3
        raise
    logger.info("Management API exposes v4 endpoints")
    return ApiGeneration.V4


def create_protocol_adapter(
    transport: ApiTransport,
    generation: str = "auto",
    page_size: int = 100
) -> ProtocolAdapter:
    """
    Factory function to create the adapter for a generation.

    Args:
        transport: Shared HTTP transport
        generation: "v4", "v3" or "auto"
        page_size: Entities per page when listing

    Returns:
        Initialized protocol adapter

    Raises:
        ValueError: If the generation is not supported
    """
    if generation == "auto":
        resolved = detect_generation(transport)
    else:
        try:
            resolved = ApiGeneration(generation)
        except ValueError:
            raise ValueError(f"Unsupported API generation: {generation}")

    if resolved == ApiGeneration.V4:
        return V4Adapter(transport, page_size)
    return V3Adapter(transport, page_size)
