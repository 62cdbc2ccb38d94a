# iderestore

Building blocks for restoring mobile devices: firmware container formats,
the ASR filesystem streaming protocol, the FDR proxy protocol, and the
logging, file and download helpers they share. The package needs Python
3.10 or later and has no runtime dependencies.

```
pip install .
```

## Modules

- `iderestore.common`: logging through `info`, `error` and `debug`.
  Each channel can be redirected with `set_info_stream`, `set_error_stream`
  and `set_debug_stream`; passing `None` switches the channel off. Debug
  output appears only after `set_debug(True)`. `get_last_error` returns the
  first line of the most recent error message, or `None`. Also
  `read_file`, `write_file`, `debug_plist` (prints a property list as XML),
  `print_progress_bar` (a 50-column bar for a percentage), `generate_guid`
  (random upper-case hexadecimal GUID in 8-4-4-4-12 form),
  `mkdir_with_parents`, `get_temp_filename` (creates an empty, uniquely
  named file in the temporary directory and returns its path),
  `get_user_input` (reads a line from the console, optionally echoing
  `*`), and the `Mode` enumeration (`UNKNOWN`, `WTF`, `DFU`, `RECOVERY`,
  `RESTORE`, `NORMAL`) with a `label` property.
- `iderestore.plistutil`: lenient lookups in property-list dictionaries.
  `dict_get_uint` accepts integers, numeric strings (decimal, octal with a
  leading `0`, hexadecimal with `0x`) and 1, 2, 4 or 8 bytes of
  little-endian data; a missing key gives `UINT64_MAX`. `dict_get_bool`
  accepts booleans, integers, the string `"true"` and a single byte of data;
  a missing key gives `False`.
- `iderestore.fls`: `parse_fls` splits a `.fls` baseband image into
  `FlsElement`s held by an `FlsFile`. `FlsFile.update_sig_blob` replaces the
  signature blob of the 0x0c element and `FlsFile.insert_ticket` inserts a
  ticket, padded with `0xFF` to a multiple of four bytes, in front of its
  data. Both rewrite `FlsFile.data`, the rebuilt image.
- `iderestore.ftab`: `parse_ftab` reads an `ftab` container into an `Ftab`
  of `FtabEntry`s. `Ftab.get_entry` returns the data stored under a tag,
  `Ftab.add_entry` appends an entry and recomputes offsets, and
  `Ftab.to_bytes` serialises the container. Tags may be given as four-byte
  strings or bytes, or as integers.
- `iderestore.asr`: `open_asr` connects to the ASR service on port 12345
  and waits for its `Initiate` message. The returned `AsrClient` answers
  out-of-band data requests with `perform_validation` and streams the image
  with `send_payload`, appending a SHA-1 to each chunk when the service asks
  for checksums. An optional `progress_callback` receives the fraction
  sent. `AsrClient` is a context manager that closes its connection.
- `iderestore.download`: `download_to_buffer` returns the body fetched from
  a URL; `download_to_file` stores it in a file and can print whole-percent
  progress lines. Redirects are followed and TLS certificates are **not**
  verified. An empty result is an error, and `download_to_file` then
  removes the file.
- `iderestore.fdr`: `fdr_connect` opens an FDR control (`FdrType.CTRL`) or
  data (`FdrType.CONN`) channel and performs its handshake.
  `FdrClient.poll_and_handle_message` handles one sync, ping or proxy
  command; proxy commands open a TCP connection and relay traffic between
  it and the device. `FdrClient.run_listener` handles messages until the
  channel ends, and sync commands start a listener for each new data
  channel in a background thread.

## Talking to a device

`open_asr` and `fdr_connect` take a device object that you supply. It needs
a `connect(port)` method returning a connection with `send(data)`
(returning the number of bytes sent), `receive(size)` and `close()`. For
FDR, `receive` must also take a `timeout` in seconds and raise
`TimeoutError` when it expires. An `OSError` from `connect` makes the
client retry, up to ten attempts, two seconds apart.

## Example: editing an ftab

```python
from iderestore.ftab import parse_ftab

with open("firmware.bin", "rb") as f:
    table = parse_ftab(f.read())

table.add_entry(b"rrko", b"\x00" * 16)
payload = table.to_bytes()
```

## Example: adding a ticket to a baseband image

```python
from iderestore.fls import parse_fls

with open("image.fls", "rb") as f:
    fls = parse_fls(f.read())

with open("ticket.der", "rb") as f:
    fls.insert_ticket(f.read())

with open("image-ticketed.fls", "wb") as f:
    f.write(fls.data)
```

## Errors

Failures are raised as exceptions: `FlsError`, `FtabError`, `AsrError`,
`DownloadError` and `FdrError`. File helpers in `iderestore.common` raise
`OSError`. Error messages are also written to the error channel.

## What the package does not do

There is no command-line tool and no complete restore procedure. The
package does not find or talk to devices over USB itself; it has no DFU or
recovery mode handling and does not request signing tickets. Those must be
provided by the caller, for instance through the device object described
above.

## Running the tests

```
pip install .[test]
pytest
```