"""Tests for patch.py module."""

from kubernetes.client import V1Container, V1KeyToPath, V1SecretVolumeSource, V1Volume, V1VolumeMount

from secret_mounter.config import DEFAULT_MOUNT_PATH
from secret_mounter.models import SecretMaterial
from secret_mounter.patch import apply_patch, build_patch, volume_name_for

SECRET = SecretMaterial(name="db-creds", namespace="ns1", keys=frozenset({"a", "b", "c"}))


class TestBuildPatch:
    """Tests for volume and mount construction."""

    def test_volume_name_is_derived_from_secret(self):
        """Test the deterministic volume name."""
        assert volume_name_for("db-creds") == "db-creds-secret-volume"

    def test_whole_secret_projection(self):
        """Test no requested keys projects the whole Secret."""
        patch = build_patch(SECRET)

        assert patch.volume_name == "db-creds-secret-volume"
        assert patch.volume.secret.secret_name == "db-creds"
        assert patch.volume.secret.items is None
        assert patch.volume_mount.name == "db-creds-secret-volume"
        assert patch.volume_mount.mount_path == DEFAULT_MOUNT_PATH
        assert patch.volume_mount.read_only is True

    def test_requested_keys_are_filtered(self):
        """Test only requested keys present in the Secret are projected."""
        patch = build_patch(SECRET, ("a", "c"))

        assert [(item.key, item.path) for item in patch.volume.secret.items] == [("a", "a"), ("c", "c")]
        assert patch.projected_keys == ("a", "c")
        assert patch.skipped_keys == ()

    def test_missing_key_is_skipped_not_fatal(self):
        """Test a requested key absent from the Secret is dropped."""
        patch = build_patch(SECRET, ("z", "b"))

        assert [item.key for item in patch.volume.secret.items] == ["b"]
        assert patch.skipped_keys == ("z",)

    def test_mount_path_override(self):
        """Test an explicit mount path replaces the default."""
        patch = build_patch(SECRET, mount_path="/var/run/creds")

        assert patch.volume_mount.mount_path == "/var/run/creds"
        assert patch.volume_mount.read_only is True


class TestApplyPatch:
    """Tests for merging a patch into a Deployment."""

    def test_adds_volume_and_mounts_to_every_container(self, deployment_factory):
        """Test the volume is added and each container mounts it."""
        deployment = deployment_factory(containers=("app", "sidecar"))

        changed = apply_patch(deployment, build_patch(SECRET))

        pod_spec = deployment.spec.template.spec
        assert changed is True
        assert [volume.name for volume in pod_spec.volumes] == ["db-creds-secret-volume"]
        for container in pod_spec.containers:
            assert [(m.name, m.mount_path, m.read_only) for m in container.volume_mounts] == [
                ("db-creds-secret-volume", DEFAULT_MOUNT_PATH, True)
            ]

    def test_applying_twice_is_idempotent(self, deployment_factory):
        """Test a second merge leaves exactly one volume and mount."""
        deployment = deployment_factory()
        apply_patch(deployment, build_patch(SECRET))

        changed = apply_patch(deployment, build_patch(SECRET))

        pod_spec = deployment.spec.template.spec
        assert changed is False
        assert len(pod_spec.volumes) == 1
        assert len(pod_spec.containers[0].volume_mounts) == 1

    def test_existing_entry_is_replaced_in_place(self, deployment_factory):
        """Test a changed key selection replaces the existing volume and mount."""
        deployment = deployment_factory()
        apply_patch(deployment, build_patch(SECRET, ("a",)))

        changed = apply_patch(deployment, build_patch(SECRET, ("b",), mount_path="/creds"))

        pod_spec = deployment.spec.template.spec
        assert changed is True
        assert len(pod_spec.volumes) == 1
        assert [item.key for item in pod_spec.volumes[0].secret.items] == ["b"]
        assert [m.mount_path for m in pod_spec.containers[0].volume_mounts] == ["/creds"]

    def test_server_defaults_do_not_count_as_change(self, deployment_factory):
        """Test fields filled in by the API server do not trigger a rewrite."""
        deployment = deployment_factory()
        apply_patch(deployment, build_patch(SECRET, ("a",)))
        volume = deployment.spec.template.spec.volumes[0]
        volume.secret.default_mode = 420

        assert apply_patch(deployment, build_patch(SECRET, ("a",))) is False
        assert deployment.spec.template.spec.volumes[0].secret.default_mode == 420

    def test_unrelated_volumes_and_mounts_are_kept(self, deployment_factory):
        """Test other volumes and mounts survive the merge untouched."""
        other_volume = V1Volume(name="config", secret=V1SecretVolumeSource(secret_name="other",
                                items=[V1KeyToPath(key="k", path="k")]))
        deployment = deployment_factory(volumes=[other_volume])
        other_mount = V1VolumeMount(name="config", mount_path="/config")
        deployment.spec.template.spec.containers[0].volume_mounts = [other_mount]

        apply_patch(deployment, build_patch(SECRET))

        pod_spec = deployment.spec.template.spec
        assert [volume.name for volume in pod_spec.volumes] == ["config", "db-creds-secret-volume"]
        assert pod_spec.volumes[0] is other_volume
        assert [m.name for m in pod_spec.containers[0].volume_mounts] == ["config", "db-creds-secret-volume"]

    def test_rebinding_replaces_previous_secret(self, deployment_factory):
        """Test mounting another Secret at the same path removes the old volume and mount."""
        deployment = deployment_factory(containers=("app", "sidecar"))
        apply_patch(deployment, build_patch(SecretMaterial(name="old", namespace="ns1", keys=frozenset({"a"}))))

        changed = apply_patch(deployment, build_patch(SECRET))

        pod_spec = deployment.spec.template.spec
        assert changed is True
        assert [volume.name for volume in pod_spec.volumes] == ["db-creds-secret-volume"]
        for container in pod_spec.containers:
            assert [(m.name, m.mount_path) for m in container.volume_mounts] == [
                ("db-creds-secret-volume", DEFAULT_MOUNT_PATH)
            ]

    def test_foreign_mount_at_same_path_is_kept(self, deployment_factory):
        """Test only mounts named like this controller's volumes are displaced."""
        deployment = deployment_factory(volumes=[V1Volume(name="config")])
        deployment.spec.template.spec.containers[0].volume_mounts = [
            V1VolumeMount(name="config", mount_path=DEFAULT_MOUNT_PATH)
        ]

        apply_patch(deployment, build_patch(SECRET))

        pod_spec = deployment.spec.template.spec
        assert [volume.name for volume in pod_spec.volumes] == ["config", "db-creds-secret-volume"]
        assert [m.name for m in pod_spec.containers[0].volume_mounts] == ["config", "db-creds-secret-volume"]

    def test_volume_still_mounted_elsewhere_is_kept(self, deployment_factory):
        """Test a displaced volume survives while another container still mounts it."""
        deployment = deployment_factory(containers=("app",))
        apply_patch(deployment, build_patch(SecretMaterial(name="old", namespace="ns1", keys=frozenset())))
        deployment.spec.template.spec.init_containers = [
            V1Container(
                name="init",
                image="busybox",
                volume_mounts=[V1VolumeMount(name="old-secret-volume", mount_path="/init")],
            )
        ]

        apply_patch(deployment, build_patch(SECRET))

        pod_spec = deployment.spec.template.spec
        assert [volume.name for volume in pod_spec.volumes] == ["old-secret-volume", "db-creds-secret-volume"]
        assert [m.name for m in pod_spec.containers[0].volume_mounts] == ["db-creds-secret-volume"]
