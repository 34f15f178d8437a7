"""Unit tests for eip.py - EIP strategy resolution."""

import pytest

from eip import EIPResolver
from errors import ConflictError, JobTimeoutError, NotFoundError, ValidationError
from jobs import JobWaiter
from models import EIPSpec, EIPStrategy, ElasticIP, ObservedLoadBalancer

from fakes import FakeCloud

LB_NAME = "k8s_lb_prod_default_web"


@pytest.fixture
def cloud():
    cloud = FakeCloud(user_id="usr-test")
    cloud.lbs["lb-1"] = {
        "id": "lb-1",
        "name": LB_NAME,
        "type": 0,
        "listeners": {},
        "eips": [],
        "private_ips": [],
        "sg": "",
        "tags": [],
    }
    return cloud


@pytest.fixture
def resolver(cloud):
    waiter = JobWaiter(cloud.job, interval=0.01, timeout=1.0)
    return EIPResolver(cloud.eip, cloud.lb, waiter, user_id="usr-test")


async def observe(cloud):
    return await cloud.lb.get_by_name(LB_NAME)


@pytest.mark.asyncio
class TestPreflight:
    """Tests for the read-only reuse checks."""

    async def test_allocate_skips_checks(self, resolver, cloud):
        result = await resolver.preflight(EIPSpec(EIPStrategy.ALLOCATE), None)
        assert result.eips == []

    async def test_unbound_eip_passes(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext")
        result = await resolver.preflight(EIPSpec(EIPStrategy.REUSE, (eip_id,)), None)
        assert [e.eip_id for e in result.eips] == [eip_id]

    async def test_bound_to_same_lb_passes(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext", resource_id="lb-1")
        observed = ObservedLoadBalancer(lb_id="lb-1", name=LB_NAME)
        result = await resolver.preflight(EIPSpec(EIPStrategy.REUSE, (eip_id,)), observed)
        assert len(result.eips) == 1

    async def test_bound_elsewhere_conflicts(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext", resource_id="i-other")
        with pytest.raises(ConflictError):
            await resolver.preflight(EIPSpec(EIPStrategy.REUSE, (eip_id,)), None)

    async def test_missing_id(self, resolver):
        with pytest.raises(NotFoundError):
            await resolver.preflight(EIPSpec(EIPStrategy.REUSE, ("eip-0000dead",)), None)

    async def test_other_account(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext", owner="usr-other")
        with pytest.raises(ValidationError):
            await resolver.preflight(EIPSpec(EIPStrategy.REUSE, (eip_id,)), None)

    async def test_no_mutation(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext", resource_id="i-other")
        with pytest.raises(ConflictError):
            await resolver.preflight(EIPSpec(EIPStrategy.REUSE, (eip_id,)), None)
        assert cloud.calls == []


@pytest.mark.asyncio
class TestResolveReuse:
    async def test_attaches_missing(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext")
        binding = await resolver.resolve(
            EIPSpec(EIPStrategy.REUSE, (eip_id,)), await observe(cloud)
        )

        assert binding.attached == [eip_id]
        assert binding.detached == []
        assert binding.changed
        assert cloud.lbs["lb-1"]["eips"] == [eip_id]

    async def test_already_bound_is_noop(self, resolver, cloud):
        eip_id = cloud.add_eip(name="ext")
        spec = EIPSpec(EIPStrategy.REUSE, (eip_id,))
        await resolver.resolve(spec, await observe(cloud))
        cloud.reset_calls()

        binding = await resolver.resolve(spec, await observe(cloud))

        assert not binding.changed
        assert binding.eip_ids == [eip_id]
        assert cloud.calls == []

    async def test_switch_releases_only_owned(self, resolver, cloud):
        owned = cloud.add_eip(name=LB_NAME)
        external = cloud.add_eip(name="ext")
        await cloud.lb.associate_eips("lb-1", [owned])
        cloud.reset_calls()

        binding = await resolver.resolve(
            EIPSpec(EIPStrategy.REUSE, (external,)), await observe(cloud)
        )

        assert binding.detached == [owned]
        assert binding.attached == [external]
        assert owned not in cloud.eips
        assert cloud.call_names == [
            "lb.dissociate_eips",
            "eip.release",
            "lb.associate_eips",
        ]


@pytest.mark.asyncio
class TestResolveAllocate:
    async def test_allocates_and_binds(self, resolver, cloud):
        binding = await resolver.resolve(EIPSpec(EIPStrategy.ALLOCATE), await observe(cloud))

        assert len(binding.allocated) == 1
        assert binding.attached == binding.allocated
        (eip_id,) = binding.allocated
        assert cloud.eips[eip_id]["name"] == LB_NAME
        assert cloud.eips[eip_id]["resource_id"] == "lb-1"

    async def test_existing_address_kept(self, resolver, cloud):
        eip_id = cloud.add_eip(name=LB_NAME)
        await cloud.lb.associate_eips("lb-1", [eip_id])
        cloud.reset_calls()

        binding = await resolver.resolve(EIPSpec(EIPStrategy.ALLOCATE), await observe(cloud))

        assert binding.eip_ids == [eip_id]
        assert not binding.changed
        assert cloud.calls == []

    async def test_adopts_unattached(self, resolver, cloud):
        eip_id = cloud.add_eip(name=LB_NAME)

        binding = await resolver.resolve(EIPSpec(EIPStrategy.ALLOCATE), await observe(cloud))

        assert binding.allocated == []
        assert binding.attached == [eip_id]
        assert "eip.allocate" not in cloud.call_names

    async def test_ignores_attached_namesake(self, resolver, cloud):
        cloud.add_eip(name=LB_NAME, resource_id="lb-stale")

        binding = await resolver.resolve(EIPSpec(EIPStrategy.ALLOCATE), await observe(cloud))

        assert len(binding.allocated) == 1

    async def test_job_timeout(self, cloud):
        waiter = JobWaiter(cloud.job, interval=0.01, timeout=0.05)
        resolver = EIPResolver(cloud.eip, cloud.lb, waiter, user_id="usr-test")
        original_new_job = cloud.new_job

        def stuck_job():
            job_id = original_new_job()
            cloud.jobs[job_id] = "working"
            return job_id

        cloud.new_job = stuck_job

        with pytest.raises(JobTimeoutError):
            await resolver.resolve(EIPSpec(EIPStrategy.ALLOCATE), await observe(cloud))


@pytest.mark.asyncio
class TestReleaseOwned:
    async def test_only_owned_released(self, resolver, cloud):
        owned = cloud.add_eip(name=LB_NAME)
        other = cloud.add_eip(name="ext")
        eips = [ElasticIP(owned, name=LB_NAME), ElasticIP(other, name="ext")]

        released = await resolver.release_owned(eips, LB_NAME)

        assert released == [owned]
        assert list(cloud.eips) == [other]

    async def test_nothing_owned(self, resolver, cloud):
        assert await resolver.release_owned([ElasticIP("eip-00000001", name="x")], LB_NAME) == []
        assert cloud.calls == []
