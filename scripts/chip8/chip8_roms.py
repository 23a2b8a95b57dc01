"""
catalog of the ROMs the user loaded, plus a launcher running one emulator process per ROM

    Data/LoadedRoms.json    list of the loaded ROMs metadata
    Data/Roms/<guid>        the bytes of each loaded ROM
"""
import argparse
import json
import shutil
import subprocess
import sys
import time
import uuid
from pathlib import Path

from chip8 import DEBUG, MAX_ROM_SIZE, RomTooLarge


DATA_FOLDER = Path("Data")
METADATA_FILE = "LoadedRoms.json"
ROMS_FOLDER = "Roms"
EMULATOR_MODULE = "chip8_pygame"


# ******************** CATALOG SECTION
class Rom:
    def __init__(self, guid, title, size, played_for=0.0):
        self.guid = guid
        self.title = title
        self.size = size
        self.played_for = played_for    # seconds spent playing, over every session

    def __repr__(self):
        return f"Rom(guid={self.guid!r}, title={self.title!r}, size={self.size})"

    def __eq__(self, other):
        return isinstance(other, Rom) and self.guid == other.guid

    def __hash__(self):
        return hash(self.guid)

    def to_dict(self):
        return {"guid": self.guid, "title": self.title, "size": self.size, "played_for": self.played_for}

    @classmethod
    def from_dict(cls, data):
        return cls(data["guid"], data["title"], data["size"], data.get("played_for", 0.0))


class RomCatalog:
    def __init__(self, data_folder=DATA_FOLDER):
        self.data_folder = Path(data_folder)
        self.metadata_path = self.data_folder / METADATA_FILE
        self.roms_folder = self.data_folder / ROMS_FOLDER
        self.roms = []

    def __iter__(self):
        return iter(self.roms)

    def __len__(self):
        return len(self.roms)

    def load(self):
        """read the catalog document, a missing document is an empty catalog"""
        if not self.metadata_path.exists():
            return self.roms
        with open(self.metadata_path, encoding="utf-8") as f:
            records = json.load(f)
        self.roms.extend(Rom.from_dict(r) for r in records)
        if DEBUG: print(f"{len(self.roms)} ROMs loaded from {self.metadata_path}")
        return self.roms

    def save(self):
        self.data_folder.mkdir(parents=True, exist_ok=True)
        with open(self.metadata_path, "w", encoding="utf-8") as f:
            json.dump([r.to_dict() for r in self.roms], f, indent=2)

    def path_for(self, rom):
        return self.roms_folder / rom.guid

    def find(self, guid_prefix):
        """get the only ROM whose guid starts with guid_prefix"""
        matches = [r for r in self.roms if r.guid.startswith(guid_prefix)]
        if len(matches) != 1:
            raise KeyError(f"{len(matches)} ROMs match the guid {guid_prefix!r}")
        return matches[0]

    def register(self, path):
        """copy the ROM file into the catalog and record it"""
        path = Path(path)
        size = path.stat().st_size
        if size > MAX_ROM_SIZE:
            raise RomTooLarge(size)
        rom = Rom(str(uuid.uuid4()), path.stem.replace("_", " ").title(), size)
        self.roms_folder.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, self.path_for(rom))
        self.roms.append(rom)
        self.save()
        if DEBUG: print(f"{rom} registered from {path}")
        return rom

    def unregister(self, rom):
        self.roms.remove(rom)
        self.path_for(rom).unlink(missing_ok=True)
        self.save()
        if DEBUG: print(f"{rom} unregistered")


# ******************** LAUNCHER SECTION
class EmulatorInstance:
    def __init__(self, rom, process, opened_at):
        self.rom = rom
        self.process = process
        self.opened_at = opened_at


class Launcher:
    def __init__(self, catalog):
        self.catalog = catalog
        self.instances = {}

    def launch(self, rom):
        """start an emulator process running rom, at most one process per ROM"""
        if rom in self.instances:
            return self.instances[rom]
        args = [sys.executable, "-m", EMULATOR_MODULE, "-f", str(self.catalog.path_for(rom))]
        process = subprocess.Popen(args)
        instance = EmulatorInstance(rom, process, time.monotonic())
        self.instances[rom] = instance
        if DEBUG: print(f"{rom} running with pid {process.pid}")
        return instance

    def stop(self, rom):
        self.instances[rom].process.kill()

    def reap(self):
        """forget exited processes and add their running time to their ROM, return the exit codes"""
        exited = {}
        for rom, instance in list(self.instances.items()):
            code = instance.process.poll()
            if code is None:
                continue
            rom.played_for += time.monotonic() - instance.opened_at
            exited[rom] = code
            del self.instances[rom]
        if exited:
            self.catalog.save()
        return exited


# ******************** ENTRY POINT SECTION
def get_args(argv=None):
    parser = argparse.ArgumentParser(description="manage the loaded CHIP-8 ROMs")
    parser.add_argument("-d", "--data", default=DATA_FOLDER, type=Path, help="catalog folder")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="list the loaded ROMs")
    add = commands.add_parser("add", help="load a ROM file")
    add.add_argument("path", type=Path)
    remove = commands.add_parser("remove", help="unload a ROM")
    remove.add_argument("guid", help="guid, or an unambiguous prefix of it")
    play = commands.add_parser("play", help="run a ROM and wait for the emulator to close")
    play.add_argument("guid", help="guid, or an unambiguous prefix of it")
    return parser.parse_args(argv)


def main(argv=None):
    args = get_args(argv)
    catalog = RomCatalog(args.data)
    catalog.load()
    try:
        if args.command == "list":
            for rom in catalog:
                print(f"{rom.guid}  {rom.title:<24} {rom.size:>5} bytes  {rom.played_for / 60:.1f} min")
        elif args.command == "add":
            rom = catalog.register(args.path)
            print(rom.guid)
        elif args.command == "remove":
            catalog.unregister(catalog.find(args.guid))
        elif args.command == "play":
            launcher = Launcher(catalog)
            instance = launcher.launch(catalog.find(args.guid))
            instance.process.wait()
            launcher.reap()
    except (KeyError, OSError, RomTooLarge) as e:
        sys.exit(f"chip8-roms: {e}")


if __name__ == "__main__":
    main()
