"""Tests for the pure convergence and teardown planners."""

import pytest

from relay_reconcile.errors import OrderingError
from relay_reconcile.ledger import Ledger
from relay_reconcile.plan import (
    COMPREHENSIVE,
    TRACKED,
    ActionKind,
    ActionPlan,
    check_teardown_order,
    plan_convergence,
    plan_teardown,
)
from relay_reconcile.state import ObservedState

SWARM_KEY = b"/key/swarm/psk/1.0.0/\n/base16/\n" + b"ab" * 32 + b"\n"


def converged(target, **overrides):
    """An observation of a host that already matches the target."""
    obs = ObservedState(
        binary_version=target.kubo_version,
        binary_link_target=str(target.binary_path),
        packages_installed=sorted(target.packages),
        proxy_installed=True,
        user_exists=True,
        group_exists=True,
        proxy_group_exists=True,
        repo_exists=True,
        repo_mode=target.repo_mode,
        repo_owner=(target.user, target.group),
        repo_initialized=True,
        repo_settings=dict(target.repo_settings),
        unit_content=target.unit_content,
        service_active=True,
        service_enabled=True,
        site_content=target.site_content,
        site_link_target=str(target.site_path),
        cert_present=True,
        key_present=True,
        cert_mode=target.cert_mode,
        key_mode=target.key_mode,
        credential_users=[target.basic_user],
        credential_mode=target.htpasswd_mode,
        credential_owner=("root", target.htpasswd_group),
        firewall_available=True,
        firewall_rules=sorted(target.firewall_rules),
        present_paths=[str(p) for p in target.tracked_paths()],
    )
    for name, value in overrides.items():
        setattr(obs, name, value)
    return obs


def kinds(plan):
    return [a.kind for a in plan.actions]


# --- Convergence ---


def test_fresh_host_plan_covers_every_artifact_in_dependency_order(target):
    observed = ObservedState(firewall_available=True, packages_missing=list(target.packages))
    plan = plan_convergence(target, observed)
    order = kinds(plan)

    assert order[0] == ActionKind.INSTALL_PACKAGES
    assert order.index(ActionKind.INSTALL_PACKAGES) < order.index(ActionKind.DISABLE_DEFAULT_SITE)
    assert order.index(ActionKind.INSTALL_BINARY) < order.index(ActionKind.LINK_BINARY)
    assert order.index(ActionKind.CREATE_GROUP) < order.index(ActionKind.CREATE_USER)
    assert order.index(ActionKind.CREATE_USER) < order.index(ActionKind.CREATE_DIR)
    assert order.index(ActionKind.CREATE_DIR) < order.index(ActionKind.INIT_REPO)
    assert order.index(ActionKind.INIT_REPO) < order.index(ActionKind.SET_REPO_CONFIG)
    assert order.index(ActionKind.WRITE_SITE) < order.index(ActionKind.LINK_SITE)
    for kind in (ActionKind.WRITE_UNIT, ActionKind.GENERATE_CERT, ActionKind.WRITE_CREDENTIAL):
        assert kind in order
    assert ActionKind.INSTALL_SWARM_KEY not in order
    assert ActionKind.CLEAR_BOOTSTRAP not in order
    assert plan.subjects(ActionKind.OPEN_PORT) == ["5443/tcp", "4001/tcp", "4001/udp"]
    assert len(plan.subjects(ActionKind.SET_REPO_CONFIG)) == 3


def test_epilogue_always_restarts_and_validates(target):
    plan = plan_convergence(target, converged(target))
    assert [a.kind for a in plan.epilogue] == [
        ActionKind.DAEMON_RELOAD,
        ActionKind.ENABLE_SERVICE,
        ActionKind.RESTART_SERVICE,
        ActionKind.CONFIRM_ACTIVE,
        ActionKind.VALIDATE_PROXY,
        ActionKind.RELOAD_PROXY,
    ]


def test_converged_host_yields_empty_plan(target):
    plan = plan_convergence(target, converged(target))
    assert plan.is_empty
    assert plan.notes == []


def test_version_mismatch_only_reinstalls_binary(target):
    plan = plan_convergence(target, converged(target, binary_version="0.32.1"))
    assert kinds(plan) == [ActionKind.INSTALL_BINARY]
    assert plan.actions[0].params["installed"] == "0.32.1"


def test_drifted_vhost_is_regenerated(target):
    plan = plan_convergence(target, converged(target, site_content="server { listen 10.0.0.1:5443; }\n"))
    assert kinds(plan) == [ActionKind.WRITE_SITE]


def test_missing_firewall_tool_is_noted_not_planned(target):
    plan = plan_convergence(target, converged(target, firewall_available=False, firewall_rules=[]))
    assert plan.is_empty
    assert any("ufw" in note for note in plan.notes)


def test_mismatched_credential_is_kept(make_target):
    target = make_target(password="new-password")
    plan = plan_convergence(target, converged(target, credential_verified=False))
    assert ActionKind.WRITE_CREDENTIAL not in kinds(plan)
    assert any("does not match" in note for note in plan.notes)


def test_store_held_by_another_user_is_kept(make_target):
    target = make_target(basic_user="pinner")
    plan = plan_convergence(target, converged(target, credential_users=["r1fs"]))
    assert plan.is_empty
    assert any("holds 'r1fs', not 'pinner'" in note for note in plan.notes)


def test_empty_store_is_written(make_target):
    target = make_target(basic_user="pinner")
    plan = plan_convergence(target, converged(target, credential_users=[]))
    assert kinds(plan) == [ActionKind.WRITE_CREDENTIAL]
    assert plan.actions[0].params == {"user": "pinner", "generated": True}


# --- Swarm key ---


def test_operator_key_installed_when_absent(make_target, workdir):
    (workdir / "swarm.key").write_bytes(SWARM_KEY)
    target = make_target()
    plan = plan_convergence(target, ObservedState())
    assert ActionKind.INSTALL_SWARM_KEY in kinds(plan)
    assert ActionKind.CLEAR_BOOTSTRAP in kinds(plan)


def test_persisted_swarm_key_never_replaced(make_target, workdir):
    (workdir / "swarm.key").write_bytes(SWARM_KEY)
    target = make_target()
    obs = converged(target, swarm_key_present=True, swarm_key_digest="0" * 64, swarm_key_mode=0o600)
    plan = plan_convergence(target, obs)
    assert plan.is_empty
    assert any("keeping the installed key" in note for note in plan.notes)


def test_swarm_key_mode_drift_is_repaired(make_target):
    target = make_target(generate_swarm_key=True)
    obs = converged(target, swarm_key_present=True, swarm_key_digest="x", swarm_key_mode=0o644)
    plan = plan_convergence(target, obs)
    assert kinds(plan) == [ActionKind.SET_MODE]
    assert plan.actions[0].subject == str(target.swarm_key_path)
    assert plan.actions[0].params["mode"] == 0o600


def test_swarm_key_generated_only_on_request(make_target):
    assert ActionKind.INSTALL_SWARM_KEY not in kinds(plan_convergence(make_target(), ObservedState()))
    plan = plan_convergence(make_target(generate_swarm_key=True), ObservedState())
    action = next(a for a in plan.actions if a.kind == ActionKind.INSTALL_SWARM_KEY)
    assert action.params["source"] == "generated"


def test_private_network_clears_public_bootstrap(make_target):
    target = make_target(generate_swarm_key=True)
    obs = converged(
        target,
        swarm_key_present=True,
        swarm_key_mode=0o600,
        bootstrap_peers=["/dnsaddr/bootstrap.libp2p.io/p2p/QmNnoo"],
    )
    assert kinds(plan_convergence(target, obs)) == [ActionKind.CLEAR_BOOTSTRAP]


# --- Teardown ---


def test_teardown_stops_service_before_deleting_anything(target):
    plan = plan_teardown(target, converged(target))
    order = kinds(plan)
    confirm = order.index(ActionKind.CONFIRM_STOPPED)

    assert order[0] == ActionKind.STOP_SERVICE
    assert order.index(ActionKind.DISABLE_SERVICE) < confirm
    assert order.index(ActionKind.KILL_PROCESSES) < confirm
    assert all(i > confirm for i, k in enumerate(order) if k == ActionKind.REMOVE_PATH)
    assert all(i > confirm for i, k in enumerate(order) if k == ActionKind.CLOSE_PORT)
    assert order.index(ActionKind.DELETE_USER) < order.index(ActionKind.DELETE_GROUP)
    check_teardown_order(plan)


def test_teardown_removes_unit_before_repository_and_binary(target):
    removed = plan_teardown(target, converged(target)).subjects(ActionKind.REMOVE_PATH)
    assert removed[0] == str(target.unit_path)
    assert removed.index(str(target.repo_dir)) < removed.index(str(target.binary_path))
    assert set(removed) == {str(p) for p in target.tracked_paths()}


def test_teardown_skips_absent_artifacts(target):
    plan = plan_teardown(target, ObservedState())
    assert kinds(plan) == [ActionKind.CONFIRM_STOPPED]


def test_ordering_check_rejects_delete_before_stop(target):
    plan = ActionPlan(mode="remove")
    plan.add(ActionKind.REMOVE_PATH, target.repo_dir)
    plan.add(ActionKind.STOP_SERVICE, target.service_name)
    plan.add(ActionKind.CONFIRM_STOPPED, target.service_name)
    with pytest.raises(OrderingError):
        check_teardown_order(plan)


def test_ordering_check_rejects_missing_stop_confirmation(target):
    plan = ActionPlan(mode="remove")
    plan.add(ActionKind.CLOSE_PORT, "5443/tcp")
    with pytest.raises(OrderingError):
        check_teardown_order(plan)


def test_ordering_check_rejects_stop_after_confirmation(target):
    plan = ActionPlan(mode="remove")
    plan.add(ActionKind.CONFIRM_STOPPED, target.service_name)
    plan.add(ActionKind.STOP_SERVICE, target.service_name)
    with pytest.raises(OrderingError):
        check_teardown_order(plan)


def test_purge_replaces_proxy_revalidation(target):
    obs = converged(target, packages_installed=["apache2-utils", "nginx", "nginx-common", "openssl"])
    kept = plan_teardown(target, obs)
    assert ActionKind.REVALIDATE_PROXY in kinds(kept)
    assert ActionKind.PURGE_PACKAGES not in kinds(kept)

    purged = plan_teardown(target, obs, purge=True)
    assert ActionKind.REVALIDATE_PROXY not in kinds(purged)
    action = next(a for a in purged.actions if a.kind == ActionKind.PURGE_PACKAGES)
    assert action.params["packages"] == ["nginx", "nginx-common"]


def test_iptables_rules_are_deleted(target):
    plan = plan_teardown(target, converged(target, iptables_rules=["4001/tcp"]))
    assert plan.subjects(ActionKind.DELETE_IPTABLES_RULE) == ["4001/tcp"]


def test_ledger_firewall_rules_close_even_when_unlisted(target):
    obs = converged(target, firewall_rules=[], ledger=Ledger(firewall_rules=["5443/tcp"]))
    plan = plan_teardown(target, obs)
    assert plan.subjects(ActionKind.CLOSE_PORT) == ["5443/tcp"]


def test_ledger_paths_join_the_tracked_set(target):
    legacy = "/opt/relay/old-ipfs.service"
    obs = converged(target, ledger=Ledger(paths=[legacy]))
    obs.present_paths.append(legacy)
    assert legacy in plan_teardown(target, obs).subjects(ActionKind.REMOVE_PATH)


def test_sweep_matches_only_in_comprehensive_scope(target):
    obs = converged(
        target,
        sweep_paths=["/tmp/kubo", str(target.binary_path), "/etc/systemd/system/kubo.service"],
        sweep_scrubs=[("/etc/hosts", "hosts")],
    )
    tracked = plan_teardown(target, obs, scope=TRACKED)
    assert "/tmp/kubo" not in tracked.subjects(ActionKind.REMOVE_PATH)
    assert ActionKind.SCRUB_LINES not in kinds(tracked)

    sweep = plan_teardown(target, obs, scope=COMPREHENSIVE)
    removed = sweep.subjects(ActionKind.REMOVE_PATH)
    assert "/tmp/kubo" in removed
    assert removed.count(str(target.binary_path)) == 1
    assert sweep.subjects(ActionKind.SCRUB_LINES) == ["/etc/hosts"]
    assert kinds(sweep).count(ActionKind.DAEMON_RELOAD) == 2
    check_teardown_order(sweep)
