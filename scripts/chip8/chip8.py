# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COWGOD'S TECHNICAL REFERENCE
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# TEST SUITE
# https://github.com/Timendus/chip8-test-suite


import os
import random
from functools import wraps


# ******************** STATIC SECTION
C8_FONTS = [0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
            0x20, 0x60, 0x20, 0x20, 0x70,  # 1
            0xF0, 0x10, 0xF0, 0x80, 0xF0,  # 2
            0xF0, 0x10, 0xF0, 0x10, 0xF0,  # 3
            0x90, 0x90, 0xF0, 0x10, 0x10,  # 4
            0xF0, 0x80, 0xF0, 0x10, 0xF0,  # 5
            0xF0, 0x80, 0xF0, 0x90, 0xF0,  # 6
            0xF0, 0x10, 0x20, 0x40, 0x40,  # 7
            0xF0, 0x90, 0xF0, 0x90, 0xF0,  # 8
            0xF0, 0x90, 0xF0, 0x10, 0xF0,  # 9
            0xF0, 0x90, 0xF0, 0x90, 0x90,  # A
            0xE0, 0x90, 0xE0, 0x90, 0xE0,  # B
            0xF0, 0x80, 0x80, 0x80, 0xF0,  # C
            0xE0, 0x90, 0x90, 0x90, 0xE0,  # D
            0xF0, 0x80, 0xF0, 0x80, 0xF0,  # E
            0xF0, 0x80, 0xF0, 0x80, 0x80]  # F

MEMORY_SIZE = 4096
FONT_START_ADDRESS = 0x000
GLYPH_SIZE = 5
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_BOTTOM = 0x0EA0
STACK_FRAME_SIZE = 4
STACK_DEPTH = 12
STACK_TOP = STACK_BOTTOM + STACK_FRAME_SIZE * STACK_DEPTH
KEY_COUNT = 16
FLAG = 0xF

SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64

PACER_INTERVAL = 600        # intended instructions per second
TIMER_INTERVAL = 60         # delay/sound timers tick at 60Hz
TIMER_DIVIDER = PACER_INTERVAL // TIMER_INTERVAL

DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every fault that halts the machine"""


class UnknownOpcode(Chip8Error, NotImplementedError):
    def __init__(self, opcode):
        self.opcode = opcode
        super().__init__(f"The opcode ({opcode:#06x}) is not a CHIP-8 instruction")


class StackOverflow(Chip8Error, IndexError):
    def __init__(self):
        super().__init__(f"The CHIP-8 stack can contain at most {STACK_DEPTH} addresses. Limit exceeded")


class StackUnderflow(Chip8Error, IndexError):
    def __init__(self):
        super().__init__("Returned from a subroutine with an empty call stack")


class RomTooLarge(Chip8Error, ValueError):
    def __init__(self, size):
        self.size = size
        super().__init__(f"The ROM is {size} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")


class MemoryFault(Chip8Error, IndexError):
    def __init__(self, address, length=1):
        self.address = address
        super().__init__(f"Accessed {length} byte(s) at 0x{address:04x}, memory ends at 0x{MEMORY_SIZE:04x}")


class InvalidKey(Chip8Error, IndexError):
    def __init__(self, key):
        self.key = key
        super().__init__(f"The keypad has no key {key:#x}")


class InvalidKeyState(Chip8Error, ValueError):
    def __init__(self, count):
        super().__init__(f"The keypad has {KEY_COUNT} lines, the host sent {count} states")


# ******************** UTILITIES SECTION
def bits(word, offset, length):
    """return `length` bits of a 16 bit word, `offset` bits away from its most significant bit"""
    mask = (1 << length) - 1
    return (word >> (16 - (offset + length))) & mask


def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].pc - 2   # args[0] equals self, pc was already moved past the opcode
            vals = fn(*args, **kwargs)  # use the locals() values of each decorated function in the print
            vals['mem_addr'] = mem_addr
            if DEBUG: print(msg.format(**vals))
        return wrapper_fn
    return decorator


# ******************** TIMER SECTION
class Timer:
    def __init__(self, interval, auto_reset=False):
        self.interval = interval
        self.auto_reset = auto_reset
        self.ticks = interval

    def __repr__(self):
        return f"Timer(ticks={self.ticks}, interval={self.interval}, auto_reset={self.auto_reset})"

    def update(self):
        """count down by one, an exhausted timer reloads only when auto_reset is on"""
        if self.ticks > 0:
            self.ticks -= 1
        elif self.auto_reset:
            self.ticks = self.interval


# ******************** MEMORY SECTION
# ********** 4KB OF MAIN MEMORY, THE CALL STACK LIVES INSIDE IT AT [STACK_BOTTOM, STACK_TOP)
class Memory:
    def __init__(self, rom=b""):
        if len(rom) > MAX_ROM_SIZE:
            raise RomTooLarge(len(rom))
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = bytes(C8_FONTS)
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom
        self.sp = STACK_BOTTOM

    def __getitem__(self, address):
        self._check(address)
        return self.inner[address]

    def _check(self, address, length=1):
        if address < 0 or address + length > MEMORY_SIZE:
            raise MemoryFault(address, length)

    def read(self, address, length):
        self._check(address, length)
        return bytes(self.inner[address:address+length])

    def write(self, address, data):
        self._check(address, len(data))
        self.inner[address:address+len(data)] = data

    @property
    def depth(self):
        """number of return addresses currently on the stack"""
        return (self.sp - STACK_BOTTOM) // STACK_FRAME_SIZE

    def read_word(self, address):
        self._check(address, 2)
        return self.inner[address] << 8 | self.inner[address + 1]

    def push(self, address):
        if self.sp >= STACK_TOP:
            raise StackOverflow()
        self.inner[self.sp:self.sp+STACK_FRAME_SIZE] = address.to_bytes(STACK_FRAME_SIZE, 'little')
        self.sp += STACK_FRAME_SIZE

    def pop(self):
        if self.sp <= STACK_BOTTOM:
            raise StackUnderflow()
        self.sp -= STACK_FRAME_SIZE
        return int.from_bytes(self.inner[self.sp:self.sp+STACK_FRAME_SIZE], 'little')


# ******************** I/O SECTION
class FrameBuffer:
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [0] * h * w

    def __str__(self):
        rows = (self.buffer[y*self.w:(y+1)*self.w] for y in range(self.h))
        return "\n".join("".join("#" if p else "." for p in row) for row in rows)

    def read_pixel(self, x, y):
        """return 1 if pixel is ON, return 0 if pixel is OFF"""
        return self.buffer[(y % self.h) * self.w + (x % self.w)]

    def set_pixel(self, x, y, bit):
        """XOR bit into the pixel at (x, y) wrapping both axes, return True if the pixel was ON before"""
        idx = (y % self.h) * self.w + (x % self.w)
        was_on = self.buffer[idx] == 1
        self.buffer[idx] ^= bit
        return was_on

    def clear(self):
        self.buffer[:] = [0] * len(self.buffer)


class Keypad:
    def __init__(self):
        self.lines = [False] * KEY_COUNT

    def __str__(self):
        return "".join(f"{k:X}" for k in range(KEY_COUNT) if self.lines[k]) or "-"

    def refresh(self, states):
        """overwrite every line with the host's current key states"""
        states = [bool(s) for s in states]
        if len(states) != KEY_COUNT:
            raise InvalidKeyState(len(states))
        self.lines = states

    def is_down(self, key):
        if not 0 <= key < KEY_COUNT:
            raise InvalidKey(key)
        return self.lines[key]

    def first_down(self):
        """get the lowest key currently held down, None when no key is held"""
        for key, down in enumerate(self.lines):
            if down:
                return key
        return None


class Host:
    """
    what the interpreter needs from the outside world
    the default implementation has every key released and discards frames
    """
    def read_keys(self):
        return [False] * KEY_COUNT

    def publish(self, framebuffer):
        pass


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rom=b"", host=None, timer_divider=TIMER_DIVIDER):
        if timer_divider < 1:
            raise ValueError("The timer divider must be a positive number of cycles")
        self.mem = Memory(rom)
        self.screen = FrameBuffer()
        self.keypad = Keypad()
        self.host = host if host is not None else Host()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.pacer = Timer(PACER_INTERVAL, auto_reset=True)
        self.dt = Timer(TIMER_INTERVAL)     # delay timer
        self.st = Timer(TIMER_INTERVAL)     # sound timer
        self.timer_divider = timer_divider
        self.cycles = 0
        self.draw = False
        self.awaiting_key = None    # register waiting for a key press (FX0A), None when running
        self.fault = None
        # opcodes are looked up by header, then by the bits each family is keyed on
        # headers missing here match on the top nibble alone, so 5XYN and 9XYN skip whatever N is
        self.masks = {0x0: 0xFFFF, 0x8: 0xF00F, 0xE: 0xF0FF, 0xF: 0xF0FF}
        self.instructions = {
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vx,
            0x7000: self._add_to_vx,
            0x8000: self._set_vx_to_vy,
            0x8001: self._set_vx_or_vy,
            0x8002: self._set_vx_and_vy,
            0x8003: self._set_vx_xor_vy,
            0x8004: self._add_vx_vy,
            0x8005: self._sub_vx_vy,
            0x8006: self._shr,
            0x8007: self._subn_vx_vy,
            0x800E: self._shl,
            0x9000: self._skip_if_not_eq_regs,
            0xA000: self._set_idx,
            0xB000: self._jump_plus,
            0xC000: self._random_byte_and,
            0xD000: self._draw_sprite,
            0xE09E: self._skip_if_pressed,
            0xE0A1: self._skip_if_not_pressed,
            0xF007: self._set_vx_dt,
            0xF00A: self._wait_keypress,
            0xF015: self._set_dt_vx,
            0xF018: self._set_st_vx,
            0xF01E: self._add_to_idx,
            0xF029: self._select_char,
            0xF033: self._bcd_repr,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK_POINTER:0x{self.mem.sp:04x} | STACK_DEPTH:{self.mem.depth}"
        timers = f"DELAY:{self.dt.ticks} | SOUND:{self.st.ticks} | CYCLES:{self.cycles}"
        state = f"KEYPAD:{self.keypad} | AWAITING_KEY:{self.awaiting_key} | FAULT:{self.fault!r}"
        return f"{registers}\n{stack}\n{timers}\n{state}"

    @property
    def sound_active(self):
        """the buzzer should be on while the sound timer is non-zero"""
        return self.st.ticks > 0

    def _goto_next_instruction(self):
        self.pc += 0x2

    def _x(self, opcode):
        return bits(opcode, 4, 4)

    def _xy(self, opcode):
        return bits(opcode, 4, 4), bits(opcode, 8, 4)

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, opcode):
        self.screen.clear()
        self.draw = True
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, opcode):
        """return from a subroutine"""
        self.pc = self.mem.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:03x}")
    def _jump(self, opcode):
        address = bits(opcode, 4, 12)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:03x}")
    def _call_addr(self, opcode):
        address = bits(opcode, 4, 12)
        self.mem.push(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, {value}")
    def _skip_if_eq(self, opcode):
        x, value = self._x(opcode), bits(opcode, 8, 8)
        if self.v_regs[x] == value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, {value}")
    def _skip_if_not_eq(self, opcode):
        x, value = self._x(opcode), bits(opcode, 8, 8)
        if self.v_regs[x] != value:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, opcode):
        x, y = self._xy(opcode)
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = self._xy(opcode)
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, {value}")
    def _set_vx(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = self._x(opcode), bits(opcode, 8, 8)
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, {value}")
    def _add_to_vx(self, opcode):
        """add to Vx without touching the carry flag"""
        x, value = self._x(opcode), bits(opcode, 8, 8)
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, opcode):
        x, y = self._xy(opcode)
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, opcode):
        x, y = self._xy(opcode)
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, opcode):
        x, y = self._xy(opcode)
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, opcode):
        x, y = self._xy(opcode)
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, opcode):
        """set Vx = Vx + Vy, set VF = carry"""
        x, y = self._xy(opcode)
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF
        self.v_regs[FLAG] = 1 if total > 0xFF else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, opcode):
        """set Vx = Vx - Vy, set VF = NOT borrow"""
        x, y = self._xy(opcode)
        not_borrow = 1 if self.v_regs[x] >= self.v_regs[y] else 0
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        self.v_regs[FLAG] = not_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, opcode):
        """set Vx = Vy - Vx, set VF = NOT borrow"""
        x, y = self._xy(opcode)
        not_borrow = 1 if self.v_regs[y] >= self.v_regs[x] else 0
        self.v_regs[x] = (self.v_regs[y] - self.v_regs[x]) & 0xFF
        self.v_regs[FLAG] = not_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x:X}")
    def _shr(self, opcode):
        x = self._x(opcode)
        lsb = self.v_regs[x] & 0x1
        self.v_regs[x] >>= 1
        self.v_regs[FLAG] = lsb
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x:X}")
    def _shl(self, opcode):
        x = self._x(opcode)
        msb = (self.v_regs[x] & 0x80) >> 7
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF
        self.v_regs[FLAG] = msb
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{address:03x}")
    def _set_idx(self, opcode):
        address = bits(opcode, 4, 12)
        self.idx = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{address:03x}")
    def _jump_plus(self, opcode):
        address = bits(opcode, 4, 12)
        self.pc = self.v_regs[0x0] + address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x:X}, 0x{kk:02x}")
    def _random_byte_and(self, opcode):
        x, kk = self._x(opcode), bits(opcode, 8, 8)
        self.v_regs[x] = random.randint(0, 255) & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x:X}, V{y:X}, {n_bytes}")
    def _draw_sprite(self, opcode):
        """
        display n-byte sprite starting at memory location I at (Vx, Vy)
        every pixel wraps around the screen on its own
        VF only reports whether the last pixel written erased a lit pixel
        """
        x, y = self._xy(opcode)
        n_bytes = bits(opcode, 12, 4)
        vx, vy = self.v_regs[x], self.v_regs[y]
        for row in range(n_bytes):
            sprite_byte = self.mem[self.idx + row]
            for col in range(8):
                bit = (sprite_byte >> (7 - col)) & 0x1
                was_on = self.screen.set_pixel(vx + col, vy + row, bit)
                self.v_regs[FLAG] = 1 if was_on and bit else 0
        self.draw = True
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x:X}")
    def _skip_if_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        x = self._x(opcode)
        if self.keypad.is_down(self.v_regs[x]):
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x:X}")
    def _skip_if_not_pressed(self, opcode):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        x = self._x(opcode)
        if not self.keypad.is_down(self.v_regs[x]):
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, DT")
    def _set_vx_dt(self, opcode):
        x = self._x(opcode)
        self.v_regs[x] = self.dt.ticks & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, K")
    def _wait_keypress(self, opcode):
        """store the first key held in Vx, park the machine until one is held otherwise"""
        x = self._x(opcode)
        key = self.keypad.first_down()
        if key is None:
            self.awaiting_key = x
        else:
            self.v_regs[x] = key
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x:X}")
    def _set_dt_vx(self, opcode):
        x = self._x(opcode)
        self.dt.ticks = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{x:X}")
    def _set_st_vx(self, opcode):
        x = self._x(opcode)
        self.st.ticks = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{x:X}")
    def _add_to_idx(self, opcode):
        x = self._x(opcode)
        self.idx = (self.idx + self.v_regs[x]) & 0xFFFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{x:X}")
    def _select_char(self, opcode):
        """set I to location of sprite for digit Vx"""
        x = self._x(opcode)
        self.idx = FONT_START_ADDRESS + self.v_regs[x] * GLYPH_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x:X}")
    def _bcd_repr(self, opcode):
        """store the hundreds digit of Vx at I, the tens digit at I+1, the ones digit at I+2"""
        x = self._x(opcode)
        value = self.v_regs[x]
        hundreds, tens, ones = value // 100 % 10, value // 10 % 10, value % 10
        self.mem.write(self.idx, bytes((hundreds, tens, ones)))
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x:X}")
    def _store_vregs(self, opcode):
        """store registers V0 through Vx (included) in memory starting at location I"""
        x = self._x(opcode)
        self.mem.write(self.idx, bytes(self.v_regs[:x+1]))
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x:X}, [I]")
    def _load_vregs(self, opcode):
        """read registers V0 through Vx (included) from memory starting at location I"""
        x = self._x(opcode)
        self.v_regs[:x+1] = list(self.mem.read(self.idx, x + 1))
        return locals()

    def decode(self, opcode):
        """decode opcodes using the mask of their family and return the respective function"""
        mask = self.masks.get(bits(opcode, 0, 4), 0xF000)
        try:
            return self.instructions[opcode & mask]
        except KeyError:
            raise UnknownOpcode(opcode) from None

    def _update_timers(self):
        self.cycles += 1
        self.pacer.update()
        if self.cycles % self.timer_divider == 0:
            self.dt.update()
            self.st.update()

    def _resume(self):
        """poll the keypad on behalf of a pending FX0A, True once a key was stored"""
        key = self.keypad.first_down()
        if key is None:
            return False
        self.v_regs[self.awaiting_key] = key
        if DEBUG: print(f"key {key:X} pressed, resuming at 0x{self.pc:04x}")
        self.awaiting_key = None
        return True

    def cycle(self):
        """emulate one machine cycle: fetch, read the keypad, decode + execute, update timers"""
        if self.fault is not None:
            raise self.fault
        self.draw = False
        try:
            if self.awaiting_key is not None:
                self.keypad.refresh(self.host.read_keys())
                if not self._resume():
                    return
            else:
                # fetch (each instruction is two bytes long)
                opcode = self.mem.read_word(self.pc)
                self._goto_next_instruction()
                self.keypad.refresh(self.host.read_keys())
                # decode + execute
                instruction = self.decode(opcode)
                instruction(opcode)
                if self.awaiting_key is not None:
                    return
        except Exception as e:
            self.fault = e     # the machine stays halted on whatever stopped this cycle
            raise
        finally:
            if self.draw:
                self.host.publish(self.screen)
        self._update_timers()
