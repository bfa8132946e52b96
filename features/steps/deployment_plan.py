import asyncio
import os
import typing

from behave import given, then, use_step_matcher, when

from fordefi_deploy import exceptions
from fordefi_deploy.deployment_plan import plan
from fordefi_deploy.keypair import Keypair
from fordefi_deploy.transaction_batcher import batch

# Use regular expressions
use_step_matcher("re")


async def fake_rent(size: int) -> int:
    return (size + 128) * 6960


@given(r"a program binary of (?P<length>[0-9]+) bytes")
def given_binary(context: typing.Any, length: str):
    context.payload = os.urandom(int(length))


@when(r"I plan the deployment with chunk size (?P<chunk_size>[0-9]+)")
def when_plan(context: typing.Any, chunk_size: str):
    context.escrow = Keypair.generate()
    context.target = Keypair.generate()
    context.fee_payer = Keypair.generate().address()
    try:
        context.plan = asyncio.run(
            plan(
                context.payload,
                context.escrow,
                context.target,
                context.fee_payer,
                fake_rent,
                int(chunk_size),
            )
        )
        context.error = None
    except exceptions.DeployError as e:
        context.plan = None
        context.error = e


@then(r"the plan should be (?P<kinds>[A-Za-z,]+)")
def then_plan_kinds(context: typing.Any, kinds: str):
    actual = [type(operation).__name__ for operation in context.plan.operations]
    assert actual == kinds.split(","), "Got " + ",".join(actual)


@then(r"the plan should have (?P<writes>[0-9]+) writes")
def then_write_count(context: typing.Any, writes: str):
    assert len(context.plan.write_chunks()) == int(writes)


@then(r"the writes should start at offsets \[(?P<offsets>[0-9,]*)]")
def then_offsets(context: typing.Any, offsets: str):
    actual = [chunk.offset for chunk in context.plan.write_chunks()]
    assert actual == [int(offset) for offset in offsets.split(",")], str(actual)


@then(r"the writes should reproduce the binary")
def then_reproduce(context: typing.Any):
    assert context.plan.payload() == context.payload
    context.plan.validate()


@then(r"the batched transactions should be (?P<groups>[A-Za-z,+]+)")
def then_batches(context: typing.Any, groups: str):
    templates = batch(context.plan, [context.escrow, context.target])
    actual = [template.describe() for template in templates]
    assert actual == groups.split(","), "Got " + ",".join(actual)


@then(r"planning should fail with (?P<error>[A-Za-z]+)")
def then_planning_fails(context: typing.Any, error: str):
    assert isinstance(context.error, getattr(exceptions, error)), repr(context.error)
