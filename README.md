# meshcontrol

The core of a coordination server for a mesh VPN. It is a library. You
give it your own storage and your own HTTP layer, and it does the protocol
work.

## Modules

- **`meshcontrol.keys`**: adds and strips the `mkey:`, `nodekey:`,
  `discokey:` and `privkey:` prefixes, parses machine public keys
  (`parse_machine_public_key`) and formats them (`format_machine_public_key`).
  `decode` opens a message sealed by a client and parses its JSON. On failure
  it raises `CannotDecryptResponse`. The module also makes random URL-safe and
  DNS-safe strings and parses octal file modes (`get_file_mode`, which falls
  back to `0o700`).
- **`meshcontrol.addresses`**: `get_available_ips` returns the lowest free
  host address in each prefix. It skips the network address, the broadcast
  address, loopback addresses and any address in use. `used_ips` builds the
  set of addresses in use from stored comma-separated lists. A prefix with no
  free address raises `CouldNotAllocateIP`.
- **`meshcontrol.wire`**: encodes responses. `marshal_response` returns
  JSON, sealed to the client's machine key unless the client speaks Noise.
  `marshal_map_response` can also compress the body with zstd, and puts a
  4-byte little-endian length in front. `keep_alive_response` encodes the
  keep-alive message.
- **`meshcontrol.swagger`**: `swagger_ui()` returns the API documentation
  page. `swagger_api_v1(spec)` serves the OpenAPI document you pass in.
  Both return an `HttpResponse` (status, content type, body).
- **`meshcontrol.models`**: `Namespace`, `Machine`, `RegisterRequest`,
  `RegisterResponse` and `MapRequest`, along with their JSON forms.
- **`meshcontrol.routes`**: `RouteManager` lists the routes a node advertises
  and the routes it has enabled, and enables an advertised route. Enabling a
  route the node does not advertise raises `RouteIsNotAvailable`.
- **`meshcontrol.registration`**: `RegistrationService.key_handler` answers the
  key request. `register_legacy` and `register_noise` handle registration
  requests, and `handle_register` does the common work. That covers pre-auth
  keys, interactive login URLs, logout, node-key refresh and expired machines.
- **`meshcontrol.poll`** and **`meshcontrol.stream`**: `PollService`
  (`poll_legacy`, `poll_noise`, `handle_poll`) answers map requests. Where the
  client asks for a stream, it runs a `PollStream`, which writes the initial
  map, sends keep-alives, checks for updates on a schedule and ends when the
  client goes away or the server shuts down. These coroutines run on asyncio.

## What the package does not do

The package has no command, no HTTP server and no database.

- `RouteManager`, `RegistrationService` and `PollService` call a store or
  server object that you provide, for example `get_machine`, `save`,
  `check_key_validity`, `get_map_response_data` and `is_outdated`.
- The package does not build network maps, evaluate ACLs or generate names
  for machines.
- The API document passed to `swagger_api_v1` is not bundled.

## Installing

```
pip install .
```

With the test tools:

```
pip install ".[test]"
```

## Example

```python
from ipaddress import ip_network

from meshcontrol.addresses import get_available_ips, used_ips
from meshcontrol.keys import machine_public_key_ensure_prefix

print(machine_public_key_ensure_prefix("abcd"))  # mkey:abcd

in_use = used_ips(["10.27.0.1"])
print(get_available_ips([ip_network("10.27.0.0/23")], in_use))  # [IPv4Address('10.27.0.2')]
```

## Tests

```
pytest
```