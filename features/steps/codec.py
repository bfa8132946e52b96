import typing

from behave import then, use_step_matcher, when

from fordefi_deploy.address import Address
from fordefi_deploy.codec import Deserializer, Serializer

# Use regular expressions
use_step_matcher("re")


@when(r"I serialize as (?P<input_type>bool|u8|u16|u32|u64|compact_u16|address|vec_u8|shortvec_bytes)")
def when_serialize(context: typing.Any, input_type: str):
    ser = Serializer()

    try:
        if input_type == "bool":
            ser.bool(context.input)
        elif input_type == "u8":
            ser.u8(context.input)
        elif input_type == "u16":
            ser.u16(context.input)
        elif input_type == "u32":
            ser.u32(context.input)
        elif input_type == "u64":
            ser.u64(context.input)
        elif input_type == "compact_u16":
            ser.compact_u16(context.input)
        elif input_type == "address":
            ser.struct(context.input)
        elif input_type == "vec_u8":
            ser.vec_u8(context.input)
        elif input_type == "shortvec_bytes":
            ser.to_bytes(context.input)
        context.output = ser.output()
    except Exception as e:
        context.output = e


@when(r"I deserialize as (?P<input_type>bool|u8|u16|u32|u64|compact_u16|address|vec_u8|shortvec_bytes)")
def when_deserialize(context: typing.Any, input_type: str):
    des = Deserializer(context.input)

    try:
        if input_type == "bool":
            context.output = des.bool()
        elif input_type == "u8":
            context.output = des.u8()
        elif input_type == "u16":
            context.output = des.u16()
        elif input_type == "u32":
            context.output = des.u32()
        elif input_type == "u64":
            context.output = des.u64()
        elif input_type == "compact_u16":
            context.output = des.compact_u16()
        elif input_type == "address":
            context.output = des.struct(Address)
        elif input_type == "vec_u8":
            context.output = des.vec_u8()
        elif input_type == "shortvec_bytes":
            context.output = des.to_bytes()
    except Exception as e:
        context.output = e


@when(r"I serialize as sequence of (?P<input_type>u8|u16|u32|u64|address)")
def when_serialize_sequence(context: typing.Any, input_type: str):
    ser = Serializer()

    if input_type == "address":
        seq_ser = Serializer.sequence_serializer(Serializer.struct)
    else:
        seq_ser = Serializer.sequence_serializer(getattr(Serializer, input_type))
    seq_ser(ser, context.input)

    context.output = ser.output()


@when(r"I deserialize as sequence of (?P<input_type>u8|u16|u32|u64|address)")
def when_deserialize_sequence(context: typing.Any, input_type: str):
    des = Deserializer(context.input)

    if input_type == "address":
        context.output = des.sequence(Address.deserialize)
    else:
        context.output = des.sequence(getattr(Deserializer, input_type))


@then(r"the (?:de)?serialization should fail")
def then_fail(context: typing.Any):
    assert isinstance(context.output, Exception), (
        "Expected an error but got " + str(context.output)
    )
