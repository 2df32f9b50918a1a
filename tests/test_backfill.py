from schemas import DonationCreate, MaterialCreate, ProjectCreate, RequestCreate


async def _approved_request(services, owner, requester, project_id, description="Plastic bottles", quantity=2):
    donation = await services.donations.create(
        owner, DonationCreate(category="Plastic", quantity=10, unit="pcs", description=description)
    )
    request = await services.requests.submit(
        requester, RequestCreate(donation_id=donation.id, quantity=quantity, project_id=project_id)
    )
    await services.requests.approve(owner, request.id)
    return request.id


async def test_backfill_repairs_only_uncredited_requests(services, make_user):
    owner, requester = await make_user("owner"), await make_user("requester")
    project = await services.projects.create(
        requester,
        ProjectCreate(title="Planter", description="Bottles", materials=[MaterialCreate(name="Plastic bottles", quantity=10)]),
    )
    material_id = next(iter(project.materials))
    acquired_path = f"projects/{project.id}/materials/{material_id}/acquired"

    credited = await _approved_request(services, owner, requester, project.id, quantity=2)
    missed = await _approved_request(services, owner, requester, project.id, quantity=3)
    # Simulate an approval whose material credit never landed.
    await services.store.update(f"requests/{missed}", {"materialBackfilled": None})
    await services.store.set(acquired_path, 2)

    result = await services.backfill.run()

    assert result.ok
    assert result.processed == 1
    assert result.updated == 1
    assert result.errors == []
    assert await services.store.get(acquired_path) == 5
    assert await services.store.get(f"requests/{missed}/materialBackfilled") is True
    assert await services.store.get(f"requests/{missed}/materialBackfilledAt") is not None
    assert await services.store.get(f"requests/{credited}/materialBackfilledAt") is None

    again = await services.backfill.run()
    assert again.processed == 0
    assert await services.store.get(acquired_path) == 5


async def test_backfill_reports_unmatched_and_missing_projects(services, make_user):
    owner, requester = await make_user("owner"), await make_user("requester")
    project = await services.projects.create(
        requester,
        ProjectCreate(title="Shelf", description="Pallets", materials=[MaterialCreate(name="Pallets", quantity=2)]),
    )
    gone = await services.projects.create(
        requester,
        ProjectCreate(title="Lamp", description="Jars", materials=[MaterialCreate(name="Glass jars", quantity=2)]),
    )
    unmatched = await _approved_request(services, owner, requester, project.id, description="Glass jars")
    orphaned = await _approved_request(services, owner, requester, gone.id, description="Glass jars")
    await services.store.update(f"requests/{orphaned}", {"materialBackfilled": None})
    await services.store.remove(f"projects/{gone.id}")

    result = await services.backfill.run()

    assert result.processed == 2
    assert result.updated == 0
    assert sorted(result.errors) == sorted([f"no-match:{unmatched}", f"project-missing:{orphaned}"])
