"""Shared test fixtures: connection config, scheme, a static REST mapper and object factories."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from kubernetes import client as k8s_client
from kubernetes.client import Configuration

from platform_cluster.mapper import RESTMapping
from platform_cluster.scheme import GroupVersionKind, Scheme, new_default_scheme

_CLUSTER_SCOPED = {"Namespace", "Node", "PersistentVolume", "ClusterRole", "ClusterRoleBinding"}


class StaticRESTMapper:
    """REST mapper that derives resource names from kinds without discovery."""

    def __init__(self) -> None:
        self.calls: list[GroupVersionKind] = []

    def rest_mapping(self, gvk: GroupVersionKind) -> RESTMapping:
        self.calls.append(gvk)
        return RESTMapping(gvk=gvk, resource=gvk.kind.lower() + "s", namespaced=gvk.kind not in _CLUSTER_SCOPED)

    def kind_for(self, api_version: str, resource: str) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(api_version, resource.removesuffix("s").capitalize())


@pytest.fixture
def rest_config() -> Configuration:
    config = Configuration()
    config.host = "https://cluster.test:6443"
    return config


@pytest.fixture
def scheme() -> Scheme:
    return new_default_scheme()


@pytest.fixture
def mapper() -> StaticRESTMapper:
    return StaticRESTMapper()


@pytest.fixture
def api_client() -> MagicMock:
    """ApiClient double whose call_api returns an empty object unless configured."""
    client = MagicMock(spec=k8s_client.ApiClient)
    client.call_api.return_value = {}
    return client

