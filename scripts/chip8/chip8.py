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
from collections import namedtuple
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

FONT_START_ADDRESS = 0x000
FONT_GLYPH_SIZE = 5
MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = 0xE00
STACK_SIZE = 16
KEY_COUNT = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64

def env_flag(name):
    """read an on/off switch from the environment, numbers >= 1 and true/yes/on turn it on"""
    value = os.getenv(name, "0").strip().lower()
    if value.isdigit():
        return int(value) >= 1
    return value in ("true", "yes", "on")

DEBUG = env_flag('DEBUG')


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class for every error raised by the virtual machine"""

class StackError(Chip8Error, IndexError):
    """the call stack over/underflowed, usually because of a malformed ROM"""

class PreconditionError(Chip8Error, ValueError):
    """the caller broke the contract of an operation, nothing has been mutated"""


# ******************** RESULTS SECTION
# what a single instruction cycle produced, address is where the opcode was fetched from
class _CycleResult:
    """results of a different kind never compare equal, even with the same address and opcode"""
    __slots__ = ()

    def __eq__(self, other):
        return type(self) is type(other) and tuple.__eq__(self, other)

    def __ne__(self, other):
        return not self == other

    __hash__ = tuple.__hash__

class Executed(_CycleResult, namedtuple("Executed", ["address", "opcode"])):
    __slots__ = ()

class DecodeFailure(_CycleResult, namedtuple("DecodeFailure", ["address", "opcode"])):
    __slots__ = ()


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = (args[0].pc - 2) & 0xFFFF    # args[0] equals self, pc was already advanced by the fetch
            vals = fn(*args, **kwargs)              # use the locals() values of each decorated function in the print
            vals['mem_addr'] = mem_addr
            if DEBUG: print(msg.format(**vals))
        return wrapper_fn
    return decorator

# ********** OPCODE FIELDS, x and y are register indexes
def reg_x(opcode):
    return (opcode & 0x0F00) >> 8

def reg_y(opcode):
    return (opcode & 0x00F0) >> 4

def byte_of(opcode):
    return opcode & 0x00FF

def addr_of(opcode):
    return opcode & 0x0FFF

class RandomByteSource:
    """produce uniformly distributed bytes, seed it to get reproducible runs"""
    def __init__(self, seed=None):
        self._random = random.Random(seed)

    def __call__(self):
        return self._random.randint(0, 255)


# ******************** I/O SECTION
class Display:
    """monochrome frame buffer, pixels are only changed by clear and xor_pixel"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [False] * h * w

    def pixel_at(self, x, y):
        """return True if pixel is ON, return False if pixel is OFF"""
        if not (0 <= x < self.w and 0 <= y < self.h):
            raise PreconditionError(f"Pixel ({x}, {y}) is outside of the {self.w}x{self.h} display")
        return self.buffer[y * self.w + x]

    def xor_pixel(self, x, y, bit):
        """
        XOR a sprite bit onto the pixel at (x, y), coordinates wrap around the screen edges
        return True when a pixel that was ON gets turned OFF (a collision)
        """
        pos = (y % self.h) * self.w + (x % self.w)
        pixel_state = self.buffer[pos]
        self.buffer[pos] = pixel_state ^ bool(bit)
        return pixel_state and bool(bit)

    def clear(self):
        self.buffer = [False] * self.h * self.w

class Keypad:
    def __init__(self):
        self.keys = [False] * KEY_COUNT

    @staticmethod
    def _check(key):
        if not isinstance(key, int) or not 0x0 <= key < KEY_COUNT:
            raise PreconditionError(f"Key {key!r} is not one of the 16 CHIP-8 keys (0x0-0xF)")

    def __getitem__(self, key):
        self._check(key)
        return self.keys[key]

    def press(self, key):
        self._check(key)
        self.keys[key] = True

    def release(self, key):
        self._check(key)
        if not self.keys[key]:
            raise PreconditionError(f"Key 0x{key:x} cannot be released, it was not pressed")
        self.keys[key] = False

    def untouched(self):
        return not any(self.keys)

    def first(self):
        """get the lowest-indexed key currently pressed, None if there is none"""
        for key, pressed in enumerate(self.keys):
            if pressed:
                return key
        return None


# ******************** MEMORY SECTION
# ********** FIXED ARRAY OF 16 RETURN ADDRESSES PLUS THE CURRENT DEPTH
class Stack:
    def __init__(self):
        self.slots = [0] * STACK_SIZE
        self.size = 0

    def append(self, address):
        if self.size >= STACK_SIZE:
            raise StackError(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.slots[self.size] = address
        self.size += 1

    def pop(self):
        if self.size <= 0:
            raise StackError("Cannot return from a subroutine, the CHIP-8 stack is empty")
        self.size -= 1
        return self.slots[self.size]

    def __str__(self):
        return "[" + ", ".join(f"0x{addr:04x}" for addr in self.slots[:self.size]) + "]"

# ********** WRAPS A LIST TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = [0] * MEMORY_SIZE
        self.inner[FONT_START_ADDRESS:FONT_START_ADDRESS+len(C8_FONTS)] = C8_FONTS
        self.rom_size = None

    # addresses wrap around the 12 bit address space
    def __setitem__(self, address, value):
        self.inner[address % MEMORY_SIZE] = value & 0xFF

    def __getitem__(self, address):
        return self.inner[address % MEMORY_SIZE]

    def __len__(self):
        return len(self.inner)

    def load_rom(self, rom):
        """copy the raw ROM image at ROM_START_ADDRESS, only one ROM can be loaded per session"""
        if self.rom_size is not None:
            raise PreconditionError("A ROM has already been loaded in this session")
        if len(rom) > MAX_ROM_SIZE:
            raise PreconditionError(f"The ROM is {len(rom)} bytes long, at most {MAX_ROM_SIZE} bytes fit in memory")
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = list(rom)
        self.rom_size = len(rom)


# ******************** CPU SECTION
class Chip8:
    def __init__(self, rng=None):
        self.mem = Memory()
        self.stack = Stack()
        self.display = Display()
        self.keypad = Keypad()
        self.rng = rng if rng is not None else RandomByteSource()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.draw = False
        self.instructions = {
            0x00E0: self._clear_screen,
            0x00EE: self._return,
            0x1000: self._jump,
            0x2000: self._call_addr,
            0x3000: self._skip_if_eq,
            0x4000: self._skip_if_not_eq,
            0x5000: self._skip_if_eq_regs,
            0x6000: self._set_vk,
            0x7000: self._add_to_vk,
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
            0xD000: self._to_screen,
            0xE09E: self._skip_if_pressed,
            0xE0A1: self._skip_if_not_pressed,
            0xF007: self._set_vx_dt,
            0xF00A: self._wait_keypress,
            0xF015: self._set_dt_vx,
            0xF018: self._set_st,
            0xF01E: self._add_to_idx,
            0xF029: self._select_char,
            0xF033: self._bcd_repr,
            0xF055: self._store_vregs,
            0xF065: self._load_vregs,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack} | DEPTH:{self.stack.size}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        flags = f"DRAW: {self.draw}"
        return f"{registers}\n{stack}\n{timers}\n{flags}"

    def pixel_at(self, x, y):
        return self.display.pixel_at(x, y)

    def load_rom(self, rom):
        self.mem.load_rom(rom)
        if DEBUG: print(f"A ROM of {len(rom)} bytes has been loaded at 0x{ROM_START_ADDRESS:04x}")

    def press(self, key):
        self.keypad.press(key)

    def release(self, key):
        self.keypad.release(key)

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{x}")
    def _skip_if_pressed(self, opcode):
        """the key is picked by the low nibble of Vx"""
        x = reg_x(opcode)
        self._skip_if(self.keypad[self.v_regs[x] & 0xF])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{x}")
    def _skip_if_not_pressed(self, opcode):
        x = reg_x(opcode)
        self._skip_if(not self.keypad[self.v_regs[x] & 0xF])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, K")
    def _wait_keypress(self, opcode):
        """wait for a key press and store its value in Vx"""
        x = reg_x(opcode)
        if self.keypad.untouched():
            self.pc = (self.pc - 0x2) & 0xFFFF     # stay on the same instruction until a key is pressed
            return locals()
        self.v_regs[x] = self.keypad.first()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, DT")
    def _set_vx_dt(self, opcode):
        """set Vx = DT (delay timer) value"""
        x = reg_x(opcode)
        self.v_regs[x] = self.dt
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{x}")
    def _set_dt_vx(self, opcode):
        """set DT (delay timer) = Vx"""
        x = reg_x(opcode)
        self.dt = self.v_regs[x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, opcode):
        self.display.clear()
        self.draw = True
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, opcode):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{address:04x}")
    def _jump(self, opcode):
        address = addr_of(opcode)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{address:04x}")
    def _call_addr(self, opcode):
        address = addr_of(opcode)
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, {byte}")
    def _skip_if_eq(self, opcode):
        x, byte = reg_x(opcode), byte_of(opcode)
        self._skip_if(self.v_regs[x] == byte)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, {byte}")
    def _skip_if_not_eq(self, opcode):
        x, byte = reg_x(opcode), byte_of(opcode)
        self._skip_if(self.v_regs[x] != byte)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{x}, V{y}")
    def _skip_if_eq_regs(self, opcode):
        x, y = reg_x(opcode), reg_y(opcode)
        self._skip_if(self.v_regs[x] == self.v_regs[y])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{x}, V{y}")
    def _skip_if_not_eq_regs(self, opcode):
        x, y = reg_x(opcode), reg_y(opcode)
        self._skip_if(self.v_regs[x] != self.v_regs[y])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, {value}")
    def _set_vk(self, opcode):
        """set the value of one of the 16 variable registers, Vx"""
        x, value = reg_x(opcode), byte_of(opcode)
        self.v_regs[x] = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, V{y}")
    def _set_vx_to_vy(self, opcode):
        """set the value of Vx equal to that of Vy"""
        x, y = reg_x(opcode), reg_y(opcode)
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{x}, V{y}")
    def _set_vx_or_vy(self, opcode):
        """set the value of Vx to Vx OR Vy"""
        x, y = reg_x(opcode), reg_y(opcode)
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{x}, V{y}")
    def _set_vx_and_vy(self, opcode):
        """set the value of Vx to Vx AND Vy"""
        x, y = reg_x(opcode), reg_y(opcode)
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{x}, V{y}")
    def _set_vx_xor_vy(self, opcode):
        """set the value of Vx to Vx XOR Vy"""
        x, y = reg_x(opcode), reg_y(opcode)
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, V{y}")
    def _add_vx_vy(self, opcode):
        """set the value of Vx to Vx + Vy, VF = carry"""
        x, y = reg_x(opcode), reg_y(opcode)
        total = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = total & 0xFF   # keep only the lowest 8 bits from the result and store them in Vx
        self.v_regs[0xF] = 1 if total > 0xFF else 0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{x}, V{y}")
    def _sub_vx_vy(self, opcode):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        x, y = reg_x(opcode), reg_y(opcode)
        not_borrow = 1 if self.v_regs[x] >= self.v_regs[y] else 0
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        self.v_regs[0xF] = not_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{x}")
    def _shr(self, opcode):
        """set Vx equal to Vx SHR 1, VF = the bit shifted out"""
        x = reg_x(opcode)
        lsb = self.v_regs[x] & 0x1
        self.v_regs[x] >>= 1
        self.v_regs[0xF] = lsb
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{x}, V{y}")
    def _subn_vx_vy(self, opcode):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        x, y = reg_x(opcode), reg_y(opcode)
        not_borrow = 1 if self.v_regs[y] >= self.v_regs[x] else 0
        self.v_regs[x] = (self.v_regs[y] - self.v_regs[x]) & 0xFF
        self.v_regs[0xF] = not_borrow
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{x}")
    def _shl(self, opcode):
        """set Vx equal to Vx SHL 1, VF = the bit shifted out"""
        x = reg_x(opcode)
        msb = (self.v_regs[x] >> 7) & 0x1
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits from the result
        self.v_regs[0xF] = msb
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{x}, {value}")
    def _add_to_vk(self, opcode):
        """add to the value already present in one of the variable registers, VF is left alone"""
        x, value = reg_x(opcode), byte_of(opcode)
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{value:03x}")
    def _set_idx(self, opcode):
        """set the value of the I register"""
        value = addr_of(opcode)
        self.idx = value
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{address:04x}")
    def _jump_plus(self, opcode):
        address = addr_of(opcode)
        v0 = self.v_regs[0x0]
        self.pc = address + v0
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{x}, 0x{kk:02x}")
    def _random_byte_and(self, opcode):
        x, kk = reg_x(opcode), byte_of(opcode)
        rnd = self.rng() & 0xFF
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{register}")
    def _set_st(self, opcode):
        """set ST = Vx"""
        register = reg_x(opcode)
        self.st = self.v_regs[register]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{register}")
    def _add_to_idx(self, opcode):
        """set I = I + Vx"""
        register = reg_x(opcode)
        self.idx = (self.idx + self.v_regs[register]) & 0xFFFF
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{register}")
    def _select_char(self, opcode):
        """set I to location of sprite for digit Vx"""
        register = reg_x(opcode)
        self.idx = FONT_START_ADDRESS + self.v_regs[register] * FONT_GLYPH_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{x}")
    def _store_vregs(self, opcode):
        """V0..Vx inclusive go to [I..I+x], I itself is left unchanged"""
        x = reg_x(opcode)
        for offset in range(x + 1):
            self.mem[self.idx + offset] = self.v_regs[offset]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{x}, [I]")
    def _load_vregs(self, opcode):
        """[I..I+x] go back to V0..Vx inclusive, I itself is left unchanged"""
        x = reg_x(opcode)
        for offset in range(x + 1):
            self.v_regs[offset] = self.mem[self.idx + offset]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{x}")
    def _bcd_repr(self, opcode):
        """BCD of Vx: hundreds at I, tens at I+1, ones at I+2"""
        x = reg_x(opcode)
        value = self.v_regs[x]
        hundreds, tens, ones = value // 100, (value // 10) % 10, value % 10
        self.mem[self.idx], self.mem[self.idx+1], self.mem[self.idx+2] = hundreds, tens, ones
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{x}, V{y}, {n_bytes}")
    def _to_screen(self, opcode):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        x, y = reg_x(opcode), reg_y(opcode)
        n_bytes = opcode & 0x000F
        x_start, y_start = self.v_regs[x], self.v_regs[y]
        collision = 0
        self.v_regs[0xF] = 0
        # step through each sprite byte, one screen row per byte
        for row in range(n_bytes):
            sprite_byte = self.mem[self.idx + row]
            for col in range(8):
                bit = (sprite_byte >> (7 - col)) & 0x1
                # sprites are XORed onto the existing screen and if this
                # causes any pixel to be erased then VF=1, otherwise VF=0
                if self.display.xor_pixel(x_start + col, y_start + row, bit):
                    collision = 1
        self.v_regs[0xF] = collision
        self.draw = True
        return locals()

    def _goto_next_instruction(self):
        self.pc = (self.pc + 0x2) & 0xFFFF

    def _skip_if(self, condition):
        if condition:
            self._goto_next_instruction()

    def fetch(self):
        """each instruction is two bytes long, stored big-endian"""
        return self.mem[self.pc] << 8 | self.mem[self.pc + 1]

    def decode(self, opcode):
        """decode opcodes using masks and return respective function, None if the opcode is unknown"""
        # WATCH OUT: masks order is important!!!
        # the most specific mask has to be tried first
        masks = (
            (0xFFFF, (0x00E0, 0x00EE)),
            (0xF0FF, (0xE09E, 0xE0A1, 0xF007, 0xF00A, 0xF015, 0xF018, 0xF01E, 0xF029, 0xF033, 0xF055, 0xF065)),
            (0xF00F, (0x5000, 0x8000, 0x8001, 0x8002, 0x8003, 0x8004, 0x8005, 0x8006, 0x8007, 0x800E, 0x9000)),
            (0xF000, (0x1000, 0x2000, 0x3000, 0x4000, 0x6000, 0x7000, 0xA000, 0xB000, 0xC000, 0xD000)),
        )
        for mask, ops in masks:
            if (opcode & mask) in ops:
                return self.instructions[opcode & mask]
        return None     # 0nnn (SYS addr) included, it's a legacy instruction

    def cycle(self):
        """emulate one machine cycle: fetch opcode, decode opcode, execute opcode"""
        self.draw = False
        address = self.pc
        opcode = self.fetch()
        self._goto_next_instruction()
        instruction = self.decode(opcode)
        if instruction is None:
            self.pc = address   # leave the machine pointing at the faulty instruction
            if DEBUG: print(f"mem_addr: 0x{address:04x}    unknown opcode: 0x{opcode:04x}")
            return DecodeFailure(address, opcode)
        instruction(opcode)
        return Executed(address, opcode)

    def tick(self):
        """decrement delay and sound timers, it has to be called at 60Hz"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1
