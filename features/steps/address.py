from behave import *

from fordefi_deploy.address import Address, program_data_address
from fordefi_deploy.keypair import Keypair

# Use regular expressions
use_step_matcher("re")


@when("I parse the address")
def when_parse_address(context):
    try:
        context.output = Address.from_str(context.input)
    except Exception as e:
        context.output = e


@when("I convert the address to a string")
def when_address_to_string(context):
    context.output = str(context.input)


@when("I derive the program data address")
def when_derive_program_data(context):
    context.output = program_data_address(context.input)


@given("a generated keypair")
def given_keypair(context):
    context.input = Keypair.generate()


@then("I should fail to parse the address")
def then_fail_address(context):
    assert isinstance(context.output, Exception)


@then("the derived address should be off the curve")
def then_off_curve(context):
    assert not context.output.is_on_curve()


@then("its address should be on the curve")
def then_on_curve(context):
    assert context.input.address().is_on_curve()
