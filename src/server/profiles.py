"""
MTU profile catalog.

Provider-tagged MTU/DNS/keepalive bundles: one default per provider, applied
to interfaces, tested against a host and compared with each other.
"""

from typing import Any, Dict, List, Optional

from structlog import get_logger

from src.common import config_codec as codec
from src.common.errors import DuplicateProfileError, FleetError, NotFoundError, ValidationError
from src.common.models import (
    DEFAULT_DNS,
    AppliedProfile,
    InterfaceRecord,
    InterfaceStatus,
    MTUProfile,
    ProbeReport,
    ProfileTestResults,
    Provider,
    RecommendedRange,
    build,
)
from src.server.mtu_probe import PROVIDER_BASELINES, baseline_for

logger = get_logger()

SWEEP_RANGES = [
    (1280, 1320),
    (1340, 1380),
    (1400, 1440),
    (1460, 1500),
]
SWEEP_STEP = 20

DEFAULT_PROVIDERS = [Provider.MPT, Provider.OOREDOO, Provider.MYTEL, Provider.ATOM, Provider.TELENOR]

# fields update_profile may change
EDITABLE_FIELDS = {
    "description", "provider", "mtu", "recommended_range", "dns",
    "persistent_keepalive", "tags", "notes", "is_default",
}


class ProfileManager:
    """Manages MTU profiles and applies them to interfaces."""

    def __init__(self, store, probe, reconciler, wireguard, filesystem, clock, settings):
        """
        Initialize profile manager.

        Args:
            store: Fleet store
            probe: MTU probe, used for live MTU changes and profile tests
            reconciler: Interface reconciler, used to restart interfaces
            wireguard: WireGuard tool, used for liveness checks
            filesystem: Config file access
            clock: Clock
            settings: Server settings
        """
        self.store = store
        self.probe = probe
        self.reconciler = reconciler
        self.wireguard = wireguard
        self.fs = filesystem
        self.clock = clock
        self.settings = settings

    # ---------- catalog ----------

    def get_profile(self, name: str) -> MTUProfile:
        return self.store.get_profile(name)

    def list_profiles(self, provider: Optional[Provider] = None) -> List[MTUProfile]:
        return self.store.list_profiles(provider)

    def create_profile(
        self,
        name: str,
        mtu: int,
        provider: Provider = Provider.CUSTOM,
        description: Optional[str] = None,
        recommended_range: Optional[RecommendedRange] = None,
        dns: Optional[List[str]] = None,
        persistent_keepalive: int = 25,
        tags: Optional[List[str]] = None,
        notes: Optional[str] = None,
        is_default: bool = False
    ) -> MTUProfile:
        profile = build(
            MTUProfile,
            name=name,
            description=description,
            provider=provider,
            mtu=mtu,
            recommended_range=recommended_range or build(RecommendedRange, min=mtu, max=mtu),
            dns=dns or [],
            persistent_keepalive=persistent_keepalive,
            tags=tags or [],
            notes=notes,
        )

        with self.store.transaction():
            self.store.add_profile(profile)
            if is_default:
                self.set_default(name)

        logger.info("profile created", profile=name, provider=provider.value, mtu=mtu)
        return self.store.get_profile(name)

    def update_profile(self, name: str, **changes) -> MTUProfile:
        """
        Change editable fields of a profile.

        Raises:
            ValidationError: If a field is not editable or a value is rejected
        """
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"cannot update profile fields: {', '.join(sorted(unknown))}")

        with self.store.transaction():
            current = self.store.get_profile(name)
            make_default = changes.pop("is_default", None)
            updated = build(MTUProfile, **{**current.model_dump(), **changes})
            self.store.save_profile(updated)

            if make_default:
                self.set_default(name)
            elif make_default is False and current.is_default:
                updated.is_default = False
                self.store.save_profile(updated)
            elif updated.is_default and updated.provider != current.provider:
                # the new provider keeps its own default if it has one
                if any(p.is_default and p.name != name for p in self.store.list_profiles(updated.provider)):
                    updated.is_default = False
                    self.store.save_profile(updated)

        return self.store.get_profile(name)

    def delete_profile(self, name: str):
        self.store.delete_profile(name)
        logger.info("profile deleted", profile=name)

    # ---------- defaults ----------

    def set_default(self, name: str) -> MTUProfile:
        """
        Make a profile the default of its provider.

        Every other profile of the same provider loses its default flag in
        the same transaction.
        """
        with self.store.transaction():
            profile = self.store.get_profile(name)
            for other in self.store.list_profiles(profile.provider):
                if other.is_default and other.name != name:
                    other.is_default = False
                    self.store.save_profile(other)
            profile.is_default = True
            self.store.save_profile(profile)

        logger.info("default profile set", profile=name, provider=profile.provider.value)
        return profile

    def get_default(self, provider: Provider) -> Optional[MTUProfile]:
        for profile in self.store.list_profiles(provider):
            if profile.is_default:
                return profile
        return None

    def bulk_generate(self, provider: Provider, base_mtu: Optional[int] = None) -> List[MTUProfile]:
        """
        Create the standard sweep of profiles for a provider.

        Twelve profiles cover 1280-1320, 1340-1380, 1400-1440 and 1460-1500
        in steps of 20. The middle one becomes the default, or the one
        closest to base_mtu when given.

        Raises:
            DuplicateProfileError: If any generated name exists already;
                nothing is created in that case
        """
        profiles = []
        for low, high in SWEEP_RANGES:
            for mtu in range(low, high + 1, SWEEP_STEP):
                profiles.append(MTUProfile(
                    name=f"{provider.value}_MTU_{mtu}",
                    description=f"MTU {mtu} for {provider.value} network",
                    provider=provider,
                    mtu=mtu,
                    recommended_range=RecommendedRange(min=low, max=high, step=SWEEP_STEP),
                    dns=list(DEFAULT_DNS),
                    persistent_keepalive=25,
                    tags=[provider.value, f"mtu-{mtu}", "auto-generated"],
                ))

        if base_mtu is None:
            default = profiles[len(profiles) // 2]
        else:
            default = min(profiles, key=lambda p: abs(p.mtu - base_mtu))

        with self.store.transaction():
            for profile in profiles:
                try:
                    self.store.get_profile(profile.name)
                except NotFoundError:
                    continue
                raise DuplicateProfileError(f"MTU profile {profile.name} already exists")

            for profile in profiles:
                self.store.add_profile(profile)
            self.set_default(default.name)

        logger.info("profiles generated", provider=provider.value, count=len(profiles), default=default.name)
        return self.store.list_profiles(provider)

    def init_defaults(self) -> Dict[str, str]:
        """
        Make sure every known provider has a default profile.

        Providers without profiles get the standard sweep; providers with
        profiles but no default get the one closest to their baseline MTU.

        Returns:
            Mapping of provider to its default profile name
        """
        defaults = {}
        for provider in DEFAULT_PROVIDERS:
            current = self.get_default(provider)
            if current is None:
                existing = self.store.list_profiles(provider)
                if existing:
                    target = baseline_for(provider)["mtu"]
                    closest = min(existing, key=lambda p: abs(p.mtu - target))
                    current = self.set_default(closest.name)
                else:
                    self.bulk_generate(provider)
                    current = self.get_default(provider)
            defaults[provider.value] = current.name
        return defaults

    # ---------- applying ----------

    def _push_settings(
        self,
        record: InterfaceRecord,
        mtu: int,
        dns: List[str],
        keepalive: int,
        provider: Provider
    ) -> bool:
        """
        Store new interface settings, edit the config file and update the
        live link. Returns whether the interface was restarted.
        """
        with self.store.transaction():
            record.mtu = mtu
            record.provider = provider
            if dns:
                record.dns = list(dns)
            if keepalive:
                record.persistent_keepalive = keepalive
            self.store.save_interface(record)

            path = self.settings.config_path(record.name)
            if self.fs.exists(path):
                text = codec.set_interface_value(self.fs.read_text(path), "MTU", str(mtu))
                if dns:
                    text = codec.set_interface_value(text, "DNS", codec.join_list(dns))
                self.fs.write_text(path, text, mode=0o600)
            else:
                self.reconciler.write_config(record.name)

        live = self.wireguard.is_running(record.name)
        if live:
            # wait for any sweep of this interface to restore its MTU first
            with self.probe.locks.get(record.name):
                self.probe.set_mtu(record.name, mtu)
        if live or record.status == InterfaceStatus.ACTIVE:
            self.reconciler.restart(record.name)
            return True
        return False

    def apply_to_interface(self, profile_name: str, interface_name: str) -> Dict[str, Any]:
        """
        Apply a profile's MTU, DNS, keepalive and provider to an interface.

        The outcome is logged in the profile's application history whether
        it succeeds or not.

        Returns:
            Summary with the previous and new MTU

        Raises:
            NotFoundError: If the profile or interface does not exist
            FleetError: If pushing the change fails, after it was logged
        """
        profile = self.store.get_profile(profile_name)

        with self.store.interface_lock(interface_name):
            record = self.store.get_interface(interface_name)
            previous_mtu = record.mtu

            error = None
            restarted = False
            try:
                restarted = self._push_settings(
                    record, profile.mtu, profile.dns, profile.persistent_keepalive, profile.provider
                )
            except FleetError as e:
                error = e
                logger.error(
                    "failed to apply profile",
                    profile=profile_name,
                    interface=interface_name,
                    error=str(e),
                )

            self._log_application(profile_name, interface_name, previous_mtu, error)

        if error is not None:
            raise error

        logger.info(
            "profile applied",
            profile=profile_name,
            interface=interface_name,
            previous_mtu=previous_mtu,
            mtu=profile.mtu,
        )
        return {
            "profile": profile_name,
            "interface": interface_name,
            "previous_mtu": previous_mtu,
            "new_mtu": profile.mtu,
            "restarted": restarted,
        }

    def _log_application(self, profile_name: str, interface_name: str, previous_mtu: int, error):
        with self.store.transaction():
            profile = self.store.get_profile(profile_name)
            profile.applied_to.append(AppliedProfile(
                interface_name=interface_name,
                applied_at=self.clock.now(),
                success=error is None,
                error=str(error) if error is not None else None,
                previous_mtu=previous_mtu,
            ))
            limit = self.settings.APPLIED_HISTORY_LIMIT
            profile.applied_to = profile.applied_to[-limit:]
            self.store.save_profile(profile)

    def apply_provider_preset(self, interface_name: str, provider: Provider) -> Dict[str, Any]:
        """
        Apply a provider's settings to an interface.

        Uses the provider's default profile when there is one, otherwise the
        provider's baseline MTU with the public resolvers.
        """
        default = self.get_default(provider)
        if default is not None:
            return self.apply_to_interface(default.name, interface_name)

        baseline = PROVIDER_BASELINES.get(provider)
        if baseline is None:
            raise NotFoundError(f"no preset for provider {provider.value}")

        with self.store.interface_lock(interface_name):
            record = self.store.get_interface(interface_name)
            previous_mtu = record.mtu
            restarted = self._push_settings(
                record, baseline["mtu"], list(DEFAULT_DNS), self.settings.DEFAULT_KEEPALIVE, provider
            )

        return {
            "profile": None,
            "interface": interface_name,
            "previous_mtu": previous_mtu,
            "new_mtu": baseline["mtu"],
            "restarted": restarted,
        }

    def bulk_apply_provider(self, provider: Provider) -> Dict[str, Any]:
        """
        Apply a provider's preset to every managed interface.

        One interface failing does not stop the others.

        Returns:
            Report with total, successful and failed counts and one result
            per interface
        """
        results = []
        for record in self.store.list_interfaces():
            try:
                outcome = self.apply_provider_preset(record.name, provider)
            except FleetError as e:
                logger.error(
                    "failed to apply provider preset",
                    interface=record.name,
                    provider=provider.value,
                    error=str(e),
                )
                results.append({"interface": record.name, "success": False, "error": str(e)})
            else:
                results.append({"interface": record.name, "success": True, "result": outcome})

        successful = sum(1 for r in results if r["success"])
        logger.info(
            "provider preset applied to fleet",
            provider=provider.value,
            total=len(results),
            successful=successful,
        )
        return {
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        }

    # ---------- testing and analysis ----------

    def run_test(self, name: str, test_host: Optional[str] = None, interface: Optional[str] = None) -> ProfileTestResults:
        """Ping a host at the profile's MTU and store the results on it."""
        profile = self.store.get_profile(name)
        host = test_host or self.settings.PROBE_TEST_HOST
        results = self.probe.measure(host, profile.mtu, interface)

        with self.store.transaction():
            profile = self.store.get_profile(name)
            profile.test_results = results
            self.store.save_profile(profile)

        logger.info(
            "profile tested",
            profile=name,
            success_rate=results.ping_success_rate,
            latency=results.average_latency,
        )
        return results

    def record_probe(self, name: str, report: ProbeReport) -> MTUProfile:
        """Store the sample of a probe sweep matching the profile's MTU."""
        with self.store.transaction():
            profile = self.store.get_profile(name)
            sample = next((s for s in report.results if s.mtu == profile.mtu), None)
            if sample is None:
                raise ValidationError(f"probe report has no sample for MTU {profile.mtu}")

            profile.test_results = ProfileTestResults(
                ping_success_rate=100 - sample.packet_loss if sample.success else 0,
                average_latency=sample.latency,
                packet_loss=sample.packet_loss,
                last_tested=report.started_at,
                test_duration=report.duration,
            )
            self.store.save_profile(profile)
            return profile

    def recommended_for(self, provider: Provider) -> Optional[MTUProfile]:
        """Best tested profile: highest success rate, then lowest latency."""
        profiles = self.store.list_profiles(provider)
        if not profiles:
            return None

        def rank(profile: MTUProfile):
            results = profile.test_results
            if results is None:
                return (1, 0, 0)
            return (0, -results.ping_success_rate, results.average_latency)

        return sorted(profiles, key=rank)[0]

    def compare(self, first: str, second: str) -> Dict[str, Any]:
        """
        Compare the test results of two profiles.

        Each profile earns a point for lower latency, lower loss and higher
        success rate; the one with more points is the better profile.
        """
        a = self.store.get_profile(first)
        b = self.store.get_profile(second)

        def summary(profile: MTUProfile) -> Dict[str, Any]:
            return {
                "name": profile.name,
                "mtu": profile.mtu,
                "provider": profile.provider.value,
                "test_results": (
                    profile.test_results.model_dump(mode="json") if profile.test_results else None
                ),
            }

        comparison = {"profile1": summary(a), "profile2": summary(b), "differences": {}}

        ra, rb = a.test_results, b.test_results
        if ra is None or rb is None:
            return comparison

        comparison["differences"] = {
            "latency": ra.average_latency - rb.average_latency,
            "packet_loss": ra.packet_loss - rb.packet_loss,
            "success_rate": ra.ping_success_rate - rb.ping_success_rate,
        }

        score_a = score_b = 0
        for a_wins in (
            ra.average_latency < rb.average_latency,
            ra.packet_loss < rb.packet_loss,
            ra.ping_success_rate > rb.ping_success_rate,
        ):
            if a_wins:
                score_a += 1
            else:
                score_b += 1

        if score_a > score_b:
            better = a.name
        elif score_b > score_a:
            better = b.name
        else:
            better = "tie"

        comparison["better_profile"] = better
        comparison["score"] = {"profile1": score_a, "profile2": score_b}
        return comparison

    def analyze_test_results(self) -> List[Dict[str, Any]]:
        """Aggregate profile test results per provider."""
        by_provider: Dict[Provider, List[MTUProfile]] = {}
        for profile in self.store.list_profiles():
            by_provider.setdefault(profile.provider, []).append(profile)

        analysis = []
        for provider in sorted(by_provider, key=lambda p: p.value):
            profiles = by_provider[provider]
            tested = [p for p in profiles if p.test_results is not None]
            reliable = [p.mtu for p in tested if p.test_results.ping_success_rate >= 95]

            analysis.append({
                "provider": provider.value,
                "total_profiles": len(profiles),
                "tested_profiles": len(tested),
                "test_coverage": len(tested) / len(profiles) * 100,
                "avg_mtu": sum(p.mtu for p in profiles) / len(profiles),
                "avg_latency": (
                    sum(p.test_results.average_latency for p in tested) / len(tested) if tested else None
                ),
                "avg_packet_loss": (
                    sum(p.test_results.packet_loss for p in tested) / len(tested) if tested else None
                ),
                "best_mtu": max(reliable) if reliable else None,
                "profiles": [
                    {
                        "name": p.name,
                        "mtu": p.mtu,
                        "latency": p.test_results.average_latency,
                        "packet_loss": p.test_results.packet_loss,
                        "success_rate": p.test_results.ping_success_rate,
                        "applications": len(p.applied_to),
                        "application_success_rate": p.success_rate,
                    }
                    for p in tested
                ],
            })
        return analysis
