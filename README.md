# sockcan

Command line tools and a small library for Linux SocketCAN interfaces:
managing the kernel CAN gateway, testing link reliability with sequence
numbers, watching changing frame contents, and inspecting ISO-TP
(ISO 15765-2) traffic.

The tools open the kernel's CAN, CAN FD, ISO-TP and netlink sockets, so
they run on Linux with the matching kernel modules loaded. The parsing and
formatting code has no such need and runs anywhere.

## Installation

    pip install .

For the test suite:

    pip install .[test]
    pytest

## Tools

### cangw – manage the CAN gateway

Add (`-A`), delete (`-D`), flush (`-F`) and list (`-L`) routing rules of
the kernel CAN gateway. Adding and deleting need `-s <src_dev>` and
`-d <dst_dev>`. Values are given in hexadecimal.

    cangw -A -s can0 -d vcan3 -e -f 123:C00007FF -m SET:IL:333.4.1122334455667788
    cangw -L
    cangw -F

Further options: `-X` (CAN FD rule), `-t` (keep the source timestamp),
`-e` (echo sent frames), `-i` (allow routing to the incoming interface),
`-u <uid>`, `-l <hops>`, `-f <filter>`, `-m <mod>` (classic CAN, up to
four), `-M <MOD>` (CAN FD, up to four), `-x` (XOR checksum), `-c` (CRC8
checksum) and `-p` (CRC8 profile). `-c` and `-x` are only accepted together
with `-m`/`-M`. `cangw -L` prints each rule as a ready-to-use `-A` command
line, followed by `# <n> handled <n> dropped <n> deleted`.

### cansequence – test link reliability

Sends frames on CAN id 2 (change it with `-i`, use `-e` for an extended
id) whose first byte is a rising sequence number, or with `-r` receives
them and reports gaps on standard error. Without `--loop=COUNT` it runs
until interrupted. `-q<num>` (or `--quit=<num>`) stops after that many
sequence errors; a bare `-q` means one. `-p` waits for buffer space instead
of failing when sending, `-v` (twice for more) adds progress output. The
interface defaults to `can0`.

    cansequence can0 --loop=1000
    cansequence can0 -r -q3

### cansniffer – watch changing frame contents

    cansniffer -c can0

Use the interface name `any` to listen on all CAN interfaces. Start-up
options: `-q` (all ids disabled), `-r <name>` (read a settings file),
`-e`, `-b`, `-8`, `-B`, `-c`, and `-t`/`-h`/`-l` for timeout, hold and loop
time in units of 10 ms. While running, type commands followed by ENTER:
`q` quits, `b`/`8`/`B` toggle binary display, `c` toggles colour, `#`
notches the changed bits, `*` clears the notches, `a`/`n`/`A`/`N` enable or
disable all standard or extended ids, `+ID`/`-ID` (or id and mask) enable
or disable identifiers, and `wNAME`/`rNAME` write or read the settings
file `sniffset.NAME` in the current directory.

### isotpdump – explain ISO-TP frames

    isotpdump -s 7E0 -d 7E8 -a -u -t d can0

Shows the PCI type of each frame (single, first, consecutive and flow
control) with its payload. `-a` adds the payload as ASCII, `-u` names the
UDS service or negative response code, `-c` colours the two directions,
`-x`/`-X` select extended addressing (`any` for all addresses), and `-t`
prints absolute (`a`), dated (`A`), delta (`d`) or zero-based (`z`)
timestamps. Ids of more than seven hex digits are extended ids.

### isotpperf – ISO-TP throughput

    isotpperf -s 7E0 -d 7E8 can0

Draws a progress bar for each PDU in transfer and, when it completes,
reports frame type, block size, STmin and the achieved bytes per second.
A transfer that is silent for one second is reported as timed out.

### isotprecv – receive ISO-TP PDUs

    isotprecv -s 7E8 -d 7E0 -l can0

Writes each received PDU to standard output as space separated hex bytes;
without `-l` it exits after the first one. Options set extended addressing
(`-x`), padding (`-p`, `-P`), flow control (`-b`, `-m`, `-w`), a forced
receive STmin (`-f`) and CAN FD link layer options (`-L`).

## Library use

The gateway rule syntax is available from `sockcan.gwrules`:

    from sockcan.gwrules import parse_filter, parse_mod

    flt = parse_filter("123:7FF")
    print(flt.format())            # "-f 123:7FF "
    mod = parse_mod("SET:IL:333.4.1122334455667788")
    print(mod.format())            # "-m SET:IL:333.4.1122334455667788 "
    payload = mod.pack()           # netlink attribute payload

`parse_fdmod`, `parse_cs_xor`, `parse_cs_crc8` and `parse_crc8_profile`
work the same way; bad input raises `RuleParseError`. `sockcan.cangw`
builds gateway requests (`GatewayRequest.encode`) and renders dump answers
(`parse_rtlist`).

The logic of the other tools is usable without a socket and can be fed
frames from recorded data:

- `sockcan.cansniffer.Sniffer` – `handle_frame`, `handle_command` and
  `handle_timeout`, which returns the terminal output.
- `sockcan.cansequence.SequenceChecker.feed` – returns the lines to report
  and raises `TooManyDrops` when the drop limit is reached.
- `sockcan.isotpperf.PerfMonitor.process` – returns the progress text.
- `sockcan.isotpdump.format_frame` – returns one explained line, or None
  when the frame's extended address is filtered out.

## What it does not do

There is no `--version` option, and none of the tools write log files;
output goes to the terminal only. The tools talk to live interfaces and
cannot replay recorded traffic themselves.