"""Unit tests for sharedreg.locator."""

from __future__ import annotations

import unittest
from unittest.mock import patch

from sharedreg import podman
from sharedreg.locator import REGISTRY_CONTAINER_NAME, describe_registry, find_registry


class TestFindRegistry(unittest.TestCase):
    """Tests for find_registry()."""

    @patch("sharedreg.locator.podman.list_containers", return_value=[])
    def test_not_found(self, _mock_list):
        self.assertIsNone(find_registry())

    @patch("sharedreg.locator.podman.list_containers", return_value=["abc", "def"])
    def test_first_match_wins(self, _mock_list):
        self.assertEqual(find_registry(), "abc")

    @patch("sharedreg.locator.podman.list_containers", return_value=["abc"])
    def test_filters_on_name_and_every_label(self, mock_list):
        find_registry()
        kwargs = mock_list.call_args.kwargs
        self.assertEqual(kwargs["name"], REGISTRY_CONTAINER_NAME)
        self.assertEqual(kwargs["labels"], {"app": "k3d", "component": "registry"})

    @patch("sharedreg.locator.podman.list_containers",
           side_effect=podman.EngineUnavailable(["podman", "ps"], 125, "Cannot connect to Podman"))
    def test_connectivity_error_propagates(self, _mock_list):
        with self.assertRaises(podman.EngineUnavailable):
            find_registry()


class TestDescribeRegistry(unittest.TestCase):
    """Tests for describe_registry()."""

    @patch("sharedreg.locator.podman.list_containers", return_value=[])
    def test_none(self, _mock_list):
        self.assertIsNone(describe_registry())

    @patch("sharedreg.locator.podman.container_state", return_value="running")
    @patch("sharedreg.locator.podman.container_networks", return_value=["k3d-a", "k3d-b"])
    @patch("sharedreg.locator.podman.container_labels",
           return_value={"app": "k3d", "hostname": "registry.localhost"})
    @patch("sharedreg.locator.podman.list_containers", return_value=["abc"])
    def test_resource(self, _mock_list, _mock_labels, _mock_nets, _mock_state):
        reg = describe_registry()
        self.assertEqual(reg.id, "abc")
        self.assertEqual(reg.hostname, "registry.localhost")
        self.assertEqual(reg.networks, ["k3d-a", "k3d-b"])
        self.assertEqual(reg.state, "running")


if __name__ == "__main__":
    unittest.main()
