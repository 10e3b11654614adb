"""Messages and gRPC bindings of the kubelet device plugin API (v1beta1)."""

import functools

import grpc
from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

PACKAGE = "v1beta1"
DEVICE_PLUGIN_SERVICE = f"{PACKAGE}.DevicePlugin"
REGISTRATION_SERVICE = f"{PACKAGE}.Registration"
REGISTER_METHOD = f"/{REGISTRATION_SERVICE}/Register"

_F = descriptor_pb2.FieldDescriptorProto
_SCALARS = {
    "string": _F.TYPE_STRING,
    "bool": _F.TYPE_BOOL,
    "int32": _F.TYPE_INT32,
    "int64": _F.TYPE_INT64,
}

# message name -> fields as (name, number, kind, repeated); a kind that is not a
# scalar type or "map" (string to string) names another message of the package.
_MESSAGES = {
    "DevicePluginOptions": [
        ("pre_start_required", 1, "bool", False),
        ("get_preferred_allocation_available", 2, "bool", False),
    ],
    "RegisterRequest": [
        ("version", 1, "string", False),
        ("endpoint", 2, "string", False),
        ("resource_name", 3, "string", False),
        ("options", 4, "DevicePluginOptions", False),
    ],
    "Empty": [],
    "ListAndWatchResponse": [("devices", 1, "Device", True)],
    "TopologyInfo": [("nodes", 1, "NUMANode", True)],
    "NUMANode": [("ID", 1, "int64", False)],
    "Device": [
        ("ID", 1, "string", False),
        ("health", 2, "string", False),
        ("topology", 3, "TopologyInfo", False),
    ],
    "PreStartContainerRequest": [("devices_ids", 1, "string", True)],
    "PreStartContainerResponse": [],
    "PreferredAllocationRequest": [
        ("container_requests", 1, "ContainerPreferredAllocationRequest", True),
    ],
    "ContainerPreferredAllocationRequest": [
        ("available_deviceIDs", 1, "string", True),
        ("must_include_deviceIDs", 2, "string", True),
        ("allocation_size", 3, "int32", False),
    ],
    "PreferredAllocationResponse": [
        ("container_responses", 1, "ContainerPreferredAllocationResponse", True),
    ],
    "ContainerPreferredAllocationResponse": [("deviceIDs", 1, "string", True)],
    "AllocateRequest": [("container_requests", 1, "ContainerAllocateRequest", True)],
    "ContainerAllocateRequest": [("devices_ids", 1, "string", True)],
    "AllocateResponse": [("container_responses", 1, "ContainerAllocateResponse", True)],
    "ContainerAllocateResponse": [
        ("envs", 1, "map", True),
        ("mounts", 2, "Mount", True),
        ("devices", 3, "DeviceSpec", True),
        ("annotations", 4, "map", True),
        ("cdi_devices", 5, "CDIDevice", True),
    ],
    "Mount": [
        ("container_path", 1, "string", False),
        ("host_path", 2, "string", False),
        ("read_only", 3, "bool", False),
    ],
    "DeviceSpec": [
        ("container_path", 1, "string", False),
        ("host_path", 2, "string", False),
        ("permissions", 3, "string", False),
    ],
    "CDIDevice": [("name", 1, "string", False)],
}

# (rpc name, servicer method, request message, response message, server streaming)
_DEVICE_PLUGIN_METHODS = (
    ("GetDevicePluginOptions", "get_device_plugin_options", "Empty", "DevicePluginOptions", False),
    ("ListAndWatch", "list_and_watch", "Empty", "ListAndWatchResponse", True),
    (
        "GetPreferredAllocation",
        "get_preferred_allocation",
        "PreferredAllocationRequest",
        "PreferredAllocationResponse",
        False,
    ),
    ("Allocate", "allocate", "AllocateRequest", "AllocateResponse", False),
    (
        "PreStartContainer",
        "pre_start_container",
        "PreStartContainerRequest",
        "PreStartContainerResponse",
        False,
    ),
)


def _build_file():
    file_proto = descriptor_pb2.FileDescriptorProto(
        name="deviceplugin/v1beta1/api.proto", package=PACKAGE, syntax="proto3"
    )
    for msg_name, fields in _MESSAGES.items():
        msg = file_proto.message_type.add(name=msg_name)
        for field_name, number, kind, repeated in fields:
            field = msg.field.add(
                name=field_name,
                number=number,
                label=_F.LABEL_REPEATED if repeated else _F.LABEL_OPTIONAL,
            )
            if kind in _SCALARS:
                field.type = _SCALARS[kind]
            elif kind == "map":
                entry_name = "".join(p.capitalize() for p in field_name.split("_")) + "Entry"
                entry = msg.nested_type.add(name=entry_name)
                entry.options.map_entry = True
                for key, key_number in (("key", 1), ("value", 2)):
                    entry.field.add(
                        name=key, number=key_number, type=_F.TYPE_STRING, label=_F.LABEL_OPTIONAL
                    )
                field.type = _F.TYPE_MESSAGE
                field.type_name = f".{PACKAGE}.{msg_name}.{entry_name}"
            else:
                field.type = _F.TYPE_MESSAGE
                field.type_name = f".{PACKAGE}.{kind}"
    return file_proto


_POOL = descriptor_pool.DescriptorPool()
_POOL.AddSerializedFile(_build_file().SerializeToString())

try:
    from google.protobuf.message_factory import GetMessageClass as _message_class
except ImportError:  # older protobuf releases
    _message_class = message_factory.MessageFactory(_POOL).GetPrototype


@functools.lru_cache(maxsize=None)
def message(name):
    """Return the message class of the device plugin API with the given name."""
    try:
        descriptor = _POOL.FindMessageTypeByName(f"{PACKAGE}.{name}")
    except KeyError:
        raise KeyError(f"unknown device plugin message: {name}") from None
    return _message_class(descriptor)


def add_device_plugin_servicer(servicer, server):
    """Serve the DevicePlugin service on server, dispatching to servicer's methods."""
    handlers = {}
    for rpc, attr, request_name, response_name, streaming in _DEVICE_PLUGIN_METHODS:
        make = (
            grpc.unary_stream_rpc_method_handler
            if streaming
            else grpc.unary_unary_rpc_method_handler
        )
        handlers[rpc] = make(
            getattr(servicer, attr),
            request_deserializer=message(request_name).FromString,
            response_serializer=message(response_name).SerializeToString,
        )
    server.add_generic_rpc_handlers(
        (grpc.method_handlers_generic_handler(DEVICE_PLUGIN_SERVICE, handlers),)
    )


def register_with_kubelet(channel, request):
    """Send a RegisterRequest over channel to the kubelet's Registration service."""
    call = channel.unary_unary(
        REGISTER_METHOD,
        request_serializer=message("RegisterRequest").SerializeToString,
        response_deserializer=message("Empty").FromString,
    )
    return call(request)