import logging
import unittest
from unittest import mock

import httpx

from cass_operator import images, reconcile, services
from cass_operator.config import settings
from cass_operator.models import v1beta1 as api

from .fakes import FakeClient, api_error, fake_datacenter


def fake_resolver(**overrides):
    data = {
        "apiVersion": "config.k8ssandra.io/v1beta1",
        "kind": "ImageConfig",
        "images": {
            "system-logger": "k8ssandra/system-logger:v1.19.0",
            "config-builder": "datastax/cass-config-builder:1.0-ubi",
        },
    }
    data.update(overrides)
    return images.ImageResolver(images.ImageConfig.model_validate(data))


class ReconcileTestCase(unittest.IsolatedAsyncioTestCase):
    # make debugging dict comparisons easier
    maxDiff = None

    def get_context(self, client, **spec):
        """
        Returns a context for a datacenter with all five services enabled.
        """
        spec.setdefault("additionalSeeds", ["10.10.0.1"])
        spec.setdefault("networking", dict(nodePort=dict(native=30042, internode=30070)))
        self.events = []
        return reconcile.ReconciliationContext(
            client,
            fake_datacenter(**spec),
            fake_resolver(),
            logger = logging.getLogger(__name__),
            event_recorder = self.record_event
        )

    def record_event(self, owner, reason, message, type = "Normal"):
        self.events.append((owner["metadata"]["name"], type, reason, message))


class TestCheckServices(ReconcileTestCase):
    async def test_creates_missing_services(self):
        client = FakeClient()
        ctx = self.get_context(client)

        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_continue)
        created = [w[2] for w in client.writes_for("services") if w[0] == "create"]
        self.assertEqual(created, [
            "cluster1-dc1-service",
            "cluster1-seed-service",
            "cluster1-dc1-all-pods-service",
            "cluster1-dc1-additional-seed-service",
            "cluster1-dc1-node-port-service",
        ])
        self.assertEqual(
            self.events,
            [("dc1", "Normal", "CreatedResource", f"Created service {name}") for name in created]
        )

    async def test_created_services_are_owned_by_datacenter(self):
        client = FakeClient()
        ctx = self.get_context(client)

        await reconcile.check_services(ctx)

        for service in client.resource("services").objects.values():
            refs = service["metadata"]["ownerReferences"]
            self.assertEqual(len(refs), 1)
            self.assertEqual(refs[0]["kind"], "CassandraDatacenter")
            self.assertEqual(refs[0]["name"], "dc1")
            self.assertEqual(refs[0]["uid"], "0b3a4c2e-1111-2222-3333-444455556666")

    async def test_creates_only_missing_then_rechecks(self):
        client = FakeClient()
        ctx = self.get_context(client)
        ekservices = client.resource("services")
        desired = services.build_services(ctx.datacenter)
        ekservices.add(desired[0])
        ekservices.add(desired[2])

        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_continue)
        writes = client.writes_for("services")
        self.assertEqual(
            [(w[0], w[2]) for w in writes],
            [
                ("create", "cluster1-seed-service"),
                ("create", "cluster1-dc1-additional-seed-service"),
                ("create", "cluster1-dc1-node-port-service"),
            ]
        )
        self.assertEqual(len(self.events), 3)
        # The check phase runs twice - once before and once after the creates
        fetches = [c for c in client.calls if c[0] == "fetch"]
        self.assertEqual(len(fetches), 10)
        # Nothing is missing on the next check
        self.assertEqual(
            await reconcile._update_changed_services(
                ctx,
                ekservices,
                services.build_services(ctx.datacenter)
            ),
            []
        )

    async def test_second_pass_performs_no_writes(self):
        client = FakeClient()
        ctx = self.get_context(client)
        await reconcile.check_services(ctx)
        writes_after_first_pass = len(client.writes)

        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_continue)
        self.assertEqual(len(client.writes), writes_after_first_pass)

    async def test_progress_updating_on_create(self):
        client = FakeClient()
        ctx = self.get_context(client)

        await reconcile.check_services(ctx)

        patches = client.writes_for("cassandradatacenters/status")
        self.assertEqual(len(patches), 1)
        self.assertEqual(
            patches[0][3],
            {"status": {"cassandraOperatorProgress": "Updating"}}
        )
        self.assertEqual(
            ctx.datacenter.status.cassandra_operator_progress,
            api.ProgressState.UPDATING
        )

    async def test_updates_changed_service(self):
        client = FakeClient()
        ctx = self.get_context(client)
        await reconcile.check_services(ctx)
        client.writes.clear()
        self.events.clear()

        # Changing the version changes the labels of every service
        ctx = self.get_context(client, serverVersion="4.1.1")
        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_continue)
        self.assertEqual(
            [w[0] for w in client.writes_for("services")],
            ["replace"] * 5
        )
        # Updates do not produce events
        self.assertEqual(self.events, [])
        # A further pass has nothing to do
        client.writes.clear()
        result = await reconcile.check_services(ctx)
        self.assertTrue(result.is_continue)
        self.assertEqual(client.writes, [])

    async def test_update_preserves_allocated_address(self):
        client = FakeClient()
        ctx = self.get_context(client)
        node_port_service = services.build_services(ctx.datacenter)[4]
        node_port_service["metadata"]["annotations"][
            "cassandra.datastax.com/resource-hash"
        ] = "outdated"
        node_port_service["spec"]["clusterIP"] = "10.0.0.5"
        ekservices = client.resource("services")
        for service in services.build_services(ctx.datacenter)[:4]:
            ekservices.add(service)
        current = ekservices.add(node_port_service)

        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_continue)
        writes = client.writes_for("services")
        self.assertEqual(len(writes), 1)
        action, _, name, body = writes[0]
        self.assertEqual((action, name), ("replace", "cluster1-dc1-node-port-service"))
        self.assertEqual(body["spec"]["clusterIP"], "10.0.0.5")
        self.assertEqual(
            body["metadata"]["resourceVersion"],
            current["metadata"]["resourceVersion"]
        )

    async def test_lookup_failure_aborts_pass(self):
        client = FakeClient()
        ctx = self.get_context(client)
        client.resource("services").errors["fetch"] = api_error(403, "forbidden")

        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_error)
        self.assertIsInstance(result.cause, reconcile.StoreError)
        self.assertEqual(result.cause.action, "fetch")
        self.assertEqual(result.cause.cause.status_code, 403)
        self.assertEqual(client.writes, [])
        self.assertEqual(self.events, [])

    async def test_create_failure_aborts_pass(self):
        client = FakeClient()
        ctx = self.get_context(client)
        client.resource("services").errors["create"] = httpx.ConnectError("connection refused")

        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_error)
        self.assertEqual(result.cause.action, "create")
        # The first create fails, so no further creates are attempted
        self.assertEqual(len(client.writes_for("services")), 1)
        self.assertEqual(self.events, [])

    async def test_update_conflict_aborts_pass(self):
        client = FakeClient()
        ctx = self.get_context(client)
        await reconcile.check_services(ctx)
        client.resource("services").errors["replace"] = api_error(409, "conflict")

        ctx = self.get_context(client, serverVersion="4.1.1")
        result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_error)
        self.assertEqual(result.cause.action, "update")
        self.assertEqual(result.cause.cause.status_code, 409)

    async def test_attempts_are_bounded(self):
        client = FakeClient()
        ctx = self.get_context(client)
        # Creates report success but the services never appear
        client.resource("services").persist_creates = False

        with mock.patch.object(settings.reconcile, "service_check_max_attempts", 3):
            result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_error)
        self.assertIsInstance(result.cause, reconcile.ReconcileAttemptsExceeded)
        # Two batches of creations, each followed by a check
        self.assertEqual(len(client.writes_for("services")), 10)
        fetches = [c for c in client.calls if c[:2] == ("fetch", "services")]
        self.assertEqual(len(fetches), 15)

    async def test_single_attempt_does_not_create(self):
        client = FakeClient()
        ctx = self.get_context(client)

        with mock.patch.object(settings.reconcile, "service_check_max_attempts", 1):
            result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_error)
        self.assertIsInstance(result.cause, reconcile.ReconcileAttemptsExceeded)
        self.assertEqual(client.writes, [])

    async def test_final_batch_is_rechecked(self):
        client = FakeClient()
        ctx = self.get_context(client)

        with mock.patch.object(settings.reconcile, "service_check_max_attempts", 2):
            result = await reconcile.check_services(ctx)

        self.assertTrue(result.is_continue)
        self.assertEqual(len(client.resource("services").objects), 5)
        self.assertEqual(
            [w[0] for w in client.writes_for("services")],
            ["create"] * 5
        )


class TestMergeForUpdate(unittest.TestCase):
    def test_copies_unset_platform_fields(self):
        desired = {
            "metadata": {"name": "svc", "namespace": "db"},
            "spec": {"type": "NodePort", "ports": []},
        }
        current = {
            "metadata": {"name": "svc", "namespace": "db", "resourceVersion": "42"},
            "spec": {
                "type": "NodePort",
                "clusterIP": "10.0.0.5",
                "clusterIPs": ["10.0.0.5"],
                "ipFamilies": ["IPv4"],
                "ipFamilyPolicy": "SingleStack",
                "sessionAffinity": "None",
                "ports": [],
            },
        }

        merged = reconcile.merge_for_update(desired, current)

        self.assertEqual(merged["metadata"]["resourceVersion"], "42")
        self.assertEqual(merged["spec"], {
            "type": "NodePort",
            "clusterIP": "10.0.0.5",
            "clusterIPs": ["10.0.0.5"],
            "ipFamilies": ["IPv4"],
            "ipFamilyPolicy": "SingleStack",
            "ports": [],
        })
        # The desired service is not modified
        self.assertNotIn("resourceVersion", desired["metadata"])
        self.assertNotIn("clusterIP", desired["spec"])

    def test_keeps_fields_set_in_desired(self):
        desired = {"metadata": {"name": "svc"}, "spec": {"clusterIP": "None"}}
        current = {
            "metadata": {"name": "svc", "resourceVersion": "7"},
            "spec": {"clusterIP": "10.0.0.5"},
        }
        merged = reconcile.merge_for_update(desired, current)
        self.assertEqual(merged["spec"]["clusterIP"], "None")


class TestSteps(ReconcileTestCase):
    async def test_check_paused(self):
        ctx = self.get_context(FakeClient(), paused=True)
        self.assertTrue((await reconcile.check_paused(ctx)).is_done)
        ctx = self.get_context(FakeClient())
        self.assertTrue((await reconcile.check_paused(ctx)).is_continue)

    async def test_check_images(self):
        ctx = self.get_context(FakeClient())
        result = await reconcile.check_images(ctx)
        self.assertTrue(result.is_continue)
        self.assertEqual(
            ctx.pod_images["containers"][0]["image"],
            "k8ssandra/cass-management-api:4.1.0"
        )

    async def test_check_images_unsupported_version(self):
        ctx = self.get_context(FakeClient(), serverType="dse", serverVersion="6.9.0")
        result = await reconcile.check_images(ctx)
        self.assertTrue(result.is_error)
        self.assertIsInstance(result.cause, images.UnsupportedVersionError)
        self.assertEqual(self.events, [(
            "dc1",
            "Warning",
            "UnsupportedVersion",
            "server 'dse' and version '6.9.0' do not work together",
        )])

    async def test_check_images_missing_auxiliary_image(self):
        ctx = self.get_context(FakeClient())
        ctx.image_resolver = images.ImageResolver(
            images.ImageConfig.model_validate({
                "apiVersion": "config.k8ssandra.io/v1beta1",
                "kind": "ImageConfig",
            })
        )
        result = await reconcile.check_images(ctx)
        self.assertTrue(result.is_error)
        self.assertIsInstance(result.cause, images.ImageNotConfiguredError)

    async def test_set_operator_ready(self):
        client = FakeClient()
        ctx = self.get_context(client)
        self.assertTrue((await reconcile.set_operator_ready(ctx)).is_continue)
        # The status is only patched when the progress changes
        self.assertTrue((await reconcile.set_operator_ready(ctx)).is_continue)
        patches = client.writes_for("cassandradatacenters/status")
        self.assertEqual(
            [p[3] for p in patches],
            [{"status": {"cassandraOperatorProgress": "Ready"}}]
        )

    async def test_set_operator_ready_failure(self):
        client = FakeClient()
        ctx = self.get_context(client)
        client.resource("cassandradatacenters/status").errors["patch"] = api_error(500)
        result = await reconcile.set_operator_ready(ctx)
        self.assertTrue(result.is_error)
        self.assertIsInstance(result.cause, reconcile.StoreError)


class TestRecordEvent(unittest.TestCase):
    def test_posts_event(self):
        owner = fake_datacenter().model_dump(by_alias = True, mode = "json")
        with mock.patch.object(reconcile.kopf, "event") as event:
            reconcile.record_event(owner, "CreatedResource", "Created service svc")
        event.assert_called_once_with(
            owner,
            type = "Normal",
            reason = "CreatedResource",
            message = "Created service svc"
        )

    def test_failure_is_not_raised(self):
        owner = fake_datacenter().model_dump(by_alias = True, mode = "json")
        with mock.patch.object(reconcile.kopf, "event", side_effect = RuntimeError("no loop")):
            with self.assertLogs(reconcile.logger, level = "ERROR"):
                reconcile.record_event(owner, "CreatedResource", "Created service svc")
