# solix

Pieces of a small x86 microkernel, modelled in plain Python:

- `solix.slab`: a slab allocator over a simulated address space. Caches hand out fixed-size objects as integer addresses, group them into slabs that move between full, partial and free lists, and keep allocation statistics.
- `solix.inet`: dataclasses that pack and unpack Ethernet, IPv4, TCP, UDP, ICMP and ARP headers in network byte order, the Internet checksum, `ip_aton`/`ip_ntoa` and the `htons`/`ntohs`/`htonl`/`ntohl` byte swaps.
- `solix.netstack`: a small network stack with a device table, an ARP cache, IPv4 sending over the first device that is up, ICMP echo, a minimal TCP handshake and UDP sockets that queue received payloads.
- `solix.shell`: a command shell with built-in commands (`help`, `clear`, `ls`, `cd`, `pwd`, `cat`, `echo`, `mkdir`, `touch`, `rm`, `ps`, `kill`, `reboot`, `halt`, `meminfo`, `mount`, `umount`, `df`, `test`).

The package has no runtime dependencies.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Slab allocator

```python
from solix.slab import SlabAllocator

allocator = SlabAllocator(max_size=16384)
cache = allocator.create_cache("widgets", 64, 0, 0, None, None)
obj = cache.alloc()              # an integer address
cache.memory(obj)[:4] = b"abcd"  # writable view of the object's bytes
cache.free(obj)
print(cache.info())

allocator.init_kmalloc_caches()  # kmalloc-8 ... kmalloc-16384
buf = allocator.kmalloc(100)     # served by the kmalloc-128 cache
allocator.kfree(buf)
print(allocator.debug_info())
```

`SlabAllocator()` without arguments refuses caches larger than 8192 bytes, so
`init_kmalloc_caches` needs `max_size=16384` to create its largest size class.
`kmalloc` searches the first eleven size classes, so it serves requests of up
to 8192 bytes and returns `None` for a size of 0. Misuse (freeing an unknown
address, a double free, an impossible cache size) raises `SlabError`.

## Protocol headers

```python
from solix.inet import IpHeader, IPPROTO_UDP, checksum, ip_aton, ip_ntoa

header = IpHeader(protocol=IPPROTO_UDP, saddr=ip_aton("10.0.0.1"), daddr=ip_aton("10.0.0.2"))
header.check = checksum(header.pack())
raw = header.pack()
assert checksum(raw) == 0
assert ip_ntoa(IpHeader.unpack(raw).daddr) == "10.0.0.2"
```

## Network stack

Each `NetDevice` has a `transmit` callable that receives the complete frames
the stack builds; incoming frames are fed to `NetworkStack.eth_receive`.

```python
from solix.inet import ip_aton
from solix.netstack import NetDevice, NetworkStack

frames = []
stack = NetworkStack()
eth0 = NetDevice("eth0", bytes.fromhex("020000000001"),
                 ip_addr=ip_aton("10.0.0.2"), transmit=frames.append)
stack.register_device(eth0)

stack.arp_cache.add(ip_aton("10.0.0.1"), bytes.fromhex("020000000002"))
stack.icmp_ping(ip_aton("10.0.0.1"))   # echo request lands in frames
```

When a destination has no ARP entry, `ip_transmit` broadcasts an ARP request
and raises `NetError`. Echo replies that come back through `eth_receive` add
their round-trip time in ticks to `stack.ping_times`. Incoming ARP requests for
the device's address are answered, and incoming TCP segments move a matching
`Socket` to the SYN-received or established state; UDP payloads are appended to
the matching socket's `received` queue.

## Shell

`Shell` writes its output to a text stream and takes command lines from any
iterable: `Shell.run` prints the banner and runs several lines, `Shell.run_line`
runs one. The filesystem is supplied by the caller as an object with the
methods `open`, `close`, `read`, `write`, `readdir`, `stat`, `mkdir`, `unlink`,
`mount` and `umount`, which raise `OSError` on failure. The process table,
memory figures, disk usage, tick counter and wait function can be passed in as
well.

```python
import io
from solix.shell import Process, ProcessState, Shell

out = io.StringIO()
shell = Shell(my_filesystem, out=out,
              processes=[Process(pid=1, ppid=0, state=ProcessState.RUNNING)])
shell.run(["pwd", "echo hello world", "ps"])
print(out.getvalue())
```

`reboot` and `halt` raise `SystemReboot` and `SystemHalt`.

## What the package does not do

- It contains no filesystem: the shell works only against a filesystem object
  provided by the caller.
- There is no keyboard driver or screen; `Shell.readline` assembles a line from
  an iterable of keystrokes and echoes to the output stream.
- The TCP support stops at the handshake states; no data is transferred, and
  there is no connect, send or receive API for sockets.
- No command-line program is installed.