# haplink

`haplink` provides pieces an accessory needs to speak the HomeKit Accessory
Protocol (HAP) over IP, written for asyncio.

## Modules

- `haplink.tlv` – the TLV8 format used by the pairing endpoints: `encode`,
  `decode` and `encode_values`, with values longer than 255 bytes split into
  fragments and joined again on decoding; the enums `TlvType`, `Method`,
  `Permissions` and `ErrorCode`; the typed item `Value`; and `PairingError`,
  an exception whose `encode()` gives the state and error items to send back.
- `haplink.crypto` – `hkdf_sha512`, which derives a 32-byte key with
  HKDF-SHA-512.
- `haplink.bonjour` – the `BonjourFeatureFlag` and `BonjourStatusFlag` enums.
- `haplink.responses` – the per-characteristic `Status` codes, `ContentType`,
  the `Response` dataclass, the JSON objects exchanged on `/characteristics`
  (`ReadResponseObject`, `WriteObject`, `WriteResponseObject`,
  `EventObject`) and the builders `tlv_response`, `json_response`,
  `status_response` and `event_response` (an `EVENT/1.0` message as bytes).
- `haplink.storage` – the abstract `Storage` interface, the `Pairing`
  dataclass and `FileStorage`.
- `haplink.session` – `compute_read_key`, `compute_write_key`,
  `encrypt_chunk`, `decrypt_chunk`, `SessionCipher` and
  `EncryptedConnection`.
- `haplink.database` – `AccessoryDatabase`, `EventEmitter`, the events
  `CharacteristicValueChanged`, `ControllerPaired` and `ControllerUnpaired`,
  the characteristic permissions `Perm`, and `AccessoryNotFoundError`.
- `haplink.handlers` – `Request`, `HandlerContext`, `HttpStatusError`, the
  base classes `TlvHandler` and `JsonHandler`, and the handlers
  `Accessories`, `GetCharacteristics`, `UpdateCharacteristics` and
  `Identify`.
- `haplink.pair_verify` – the `PairVerify` handler.
- `haplink.pairings` – the `Pairings` handler and `check_admin`.
- `haplink.server` – `parse_request`, `Api` and `Server`.

## Installation

Install the package with your usual Python package installer; its only
runtime dependency is `cryptography`. The `test` extra adds `pytest` and
`pytest-asyncio`.

## TLV8

```python
from haplink import tlv

payload = tlv.encode([(0x06, b"\x01"), (0x03, bytes(300))])
items = tlv.decode(payload)

assert items[0x06] == b"\x01"
assert len(items[0x03]) == 300   # the two fragments are joined again

body = tlv.PairingError(2, tlv.ErrorCode.AUTHENTICATION).encode()
assert tlv.decode(body) == {0x06: b"\x02", 0x07: b"\x02"}
```

`decode` raises `ValueError` on a truncated item.

## Storage

`FileStorage(directory)` creates the directory with `pairings/` and `misc/`
below it and keeps everything there: `config.json` (any JSON-serialisable
value), `aid_cache.json`, one JSON file per pairing under `pairings/`, and
raw byte blobs under `misc/`. `FileStorage.current_dir()` uses `./data`.
Its load, save and delete methods are coroutines.

```python
import asyncio
from haplink.storage import FileStorage

async def demo():
    storage = FileStorage.current_dir()
    await storage.save_bytes("my_custom_bytes", b"\x01\x02\x03")
    print(await storage.load_bytes("my_custom_bytes"))
    print(await storage.count_pairings())

asyncio.run(demo())
```

Loading something that was never saved, or was deleted, raises an error
(`FileNotFoundError`) rather than returning an empty value.

## Encrypted sessions

Once pair verification has agreed on a shared secret, every frame on the
connection is a two-byte little-endian length, up to 1024 bytes of
ChaCha20-Poly1305 ciphertext and a 16-byte tag. The two keys come from the
shared secret through `compute_read_key` and `compute_write_key`, and each
direction keeps its own nonce counter.

`SessionCipher.encrypt()` frames outgoing data and `SessionCipher.feed()`
takes received bytes and returns the plaintext of every frame that is now
complete. `EncryptedConnection` wraps an asyncio reader and writer, passes
data through in plain text until `activate()` is given a `Session`, and
switches to encrypted traffic at the next read, so the last pair-verify
reply still goes out unencrypted.

## Accessories

`AccessoryDatabase` works with accessory objects supplied by the caller.
An accessory needs an `id`, `services`, `set_event_emitter()`,
`get_service()` and `to_dict()`; a service needs `characteristics` and
`get_characteristic()`; a characteristic needs `id`, `hap_type`, `format`,
`perms`, `unit`, `max_value`, `min_value`, `step_value`, `max_len`,
`event_notifications` and the coroutines `get_value()` and `set_value()`.
Reads and writes are addressed by accessory and instance ID, and writes with
`ev` keep the connection's list of event subscriptions up to date.
`Identify` sets the characteristic of type `"14"` on the service of type
`"3E"` of every accessory to `True`, and refuses with status `-70401` once any
pairing exists.

## Running a server

`Server(config, storage, accessory_database, event_emitter)` takes a
configuration object that provides `host` and the listening socket number
it binds to, plus `device_id` and `device_ed25519_keypair` (an object with a
`sign(bytes)` method) for pair verification and, optionally, `max_peers`
for adding pairings. `Server.run()` serves until cancelled; each connection
is handled by `Server.handle_connection()`, which parses HTTP/1.x requests,
routes them through `Api.dispatch()` and pushes `EVENT/1.0` messages for
subscribed characteristics when a `CharacteristicValueChanged` is emitted.

| Method | Path               | Handler                 |
|--------|--------------------|-------------------------|
| POST   | `/pair-verify`     | `PairVerify`            |
| GET    | `/accessories`     | `Accessories`           |
| GET    | `/characteristics` | `GetCharacteristics`    |
| PUT    | `/characteristics` | `UpdateCharacteristics` |
| POST   | `/pairings`        | `Pairings`              |
| POST   | `/identify`        | `Identify`              |
| POST   | `/pair-setup`      | only if a `pair_setup_factory` is given |

Any other request gets `404 Not Found`.

## What the package does not do

- It has no pair-setup handler of its own. A `TlvHandler` for `/pair-setup`
  has to be supplied through `pair_setup_factory`; without one, new
  controllers cannot be paired except by writing pairings to storage.
- It does not announce the accessory over Bonjour/mDNS. `Server` calls an
  optional `announce` coroutine once it is listening; advertising the
  service is left to that callback.
- It has no accessory, service or characteristic classes; they are supplied
  by the caller as described above.
- It offers no command-line program.