# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COWGOD'S TECHNICAL REFERENCE
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# QUIRKS OF THIS INTERPRETER
# - DRW sets VF only when a pixel is ERASED (goes from 1 to 0)
# - SHR/SHL shift Vx in place, Vy is ignored
# - FX55/FX65 leave I pointing right after the last byte copied
# - FX1E reports in VF whether I went past 0xFFF, I itself wraps at 16 bits


import argparse
import logging
import os
import random
import time
from collections import namedtuple
from functools import wraps


log = logging.getLogger(__name__)


# ******************** STATIC SECTION
C8_FONTS = bytes([0xF0, 0x90, 0x90, 0x90, 0xF0,  # 0
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
                  0xF0, 0x80, 0xF0, 0x80, 0x80]) # F

MEMORY_SIZE = 4096
ROM_START_ADDRESS = 0x200
MAX_ROM_SIZE = MEMORY_SIZE - ROM_START_ADDRESS
STACK_SIZE = 16
KEY_COUNT = 16
GLYPH_SIZE = 5                  # bytes per font character
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
DEFAULT_CLOCK_HZ = 600
MIN_CLOCK_HZ = 60
TIMER_HZ = 60
CYCLES_WRAP = 0xFFFFFFFF
MAX_INDEX = 0xFFFF              # I is a 16 bit register, only 12 bits address memory
DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    pass

class UsageError(Chip8Error):
    """malformed command line"""

class LoadError(Chip8Error):
    """font or ROM data missing, unreadable or too big for memory"""

class RuntimeBoundsError(Chip8Error):
    """a register ended up outside of its domain, the machine can't go on"""
    def __init__(self, field, value):
        self.field = field
        self.value = value
        super().__init__(f"{field} out of bounds: {value}")

class UnknownOpcodeError(Chip8Error):
    def __init__(self, opcode, address):
        self.opcode = opcode
        self.address = address
        super().__init__(f"unknown opcode 0x{opcode:04x} at 0x{address:03x}")


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to log the ASM of the instruction being executed"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].state.pc     # args[0] equals self of the decorated method
            vals = fn(*args, **kwargs)      # use the locals() values of each decorated function in the log line
            if log.isEnabledFor(logging.DEBUG):
                vals['mem_addr'] = mem_addr
                log.debug(msg.format(**vals))
        return wrapper_fn
    return decorator

# every opcode is split in the same fields, the handler picks the ones it needs
Instruction = namedtuple('Instruction', ['opcode', 'key', 'x', 'y', 'n', 'kk', 'nnn'])

# mask applied to an opcode, by family, to get its key in the dispatch table
FAMILY_MASKS = {
    0x0000: 0xFFFF,
    0x5000: 0xF00F,
    0x8000: 0xF00F,
    0x9000: 0xF00F,
    0xE000: 0xF0FF,
    0xF000: 0xF0FF,
}

def decode(opcode):
    """split a 16 bit opcode into its fields"""
    family = opcode & 0xF000
    return Instruction(
        opcode=opcode,
        key=opcode & FAMILY_MASKS.get(family, 0xF000),
        x=(opcode & 0x0F00) >> 8,
        y=(opcode & 0x00F0) >> 4,
        n=opcode & 0x000F,
        kk=opcode & 0x00FF,
        nnn=opcode & 0x0FFF,
    )

class ArgumentParser(argparse.ArgumentParser):
    """argparse parser raising UsageError instead of exiting"""
    def error(self, message):
        raise UsageError(f"{self.format_usage()}{self.prog}: error: {message}")

def parse_args(argv=None):
    """parse the command line, raise UsageError when it doesn't make sense"""
    parser = ArgumentParser(prog='chip8', add_help=False, description='CHIP-8 interpreter')
    parser.add_argument('rom', help='input rom file')
    parser.add_argument('-h', dest='hz', type=int, default=DEFAULT_CLOCK_HZ,
                        help=f'target clock rate in instructions per second (default {DEFAULT_CLOCK_HZ}, min {MIN_CLOCK_HZ})')
    parser.add_argument('-d', dest='debug', action='store_true', help='trace every instruction')
    parser.add_argument('--strict', action='store_true', help='stop on unknown opcodes instead of skipping them')
    parser.add_argument('--font', default=None, help='load the font from this file instead of the built-in one')
    parser.add_argument('--scale', type=int, default=15, help='window pixels per CHIP-8 pixel')
    parser.add_argument('--help', action='help', help='show this help message and exit')
    args = parser.parse_args(argv)
    if args.hz < MIN_CLOCK_HZ:
        parser.error(f"target hz must be at least {MIN_CLOCK_HZ}")
    if args.scale < 1:
        parser.error("scale must be a positive integer")
    args.debug = args.debug or DEBUG
    return args

def read_file(path):
    """read font or ROM bytes from disk"""
    try:
        with open(path, mode='rb') as f:
            return f.read()
    except OSError as e:
        raise LoadError(f"cannot read {path}: {e.strerror or e}") from e


# ******************** I/O SECTION
class FrameBuffer:
    """64x32 monochrome pixels, only changed through clear and draw_sprite"""
    def __init__(self, w=SCREEN_WIDTH, h=SCREEN_HEIGHT):
        self.w, self.h = w, h
        self.buffer = [0] * h * w

    def __getitem__(self, xy):
        x, y = xy
        return self.buffer[y * self.w + x]

    def clear(self):
        self.buffer = [0] * self.h * self.w

    def draw_sprite(self, x, y, sprite):
        """
        XOR the sprite bytes onto the screen starting at (x, y), wrapping around both edges
        return True if any pixel has been erased (turned from ON to OFF)
        """
        erased = False
        for i, sprite_byte in enumerate(sprite):
            # increment y by one for each new sprite's byte read
            y_coordinate = (y + i) % self.h
            for j in range(8):
                x_coordinate = (x + j) % self.w
                bit = (sprite_byte >> (7 - j)) & 0x1
                pos = y_coordinate * self.w + x_coordinate
                prev = self.buffer[pos]
                self.buffer[pos] = prev ^ bit
                if prev == 1 and self.buffer[pos] == 0:
                    erased = True
        return erased

    def snapshot(self):
        """immutable copy of the screen, one tuple per row"""
        return tuple(tuple(self.buffer[y * self.w:(y + 1) * self.w]) for y in range(self.h))

class Keypad:
    """state of the 16 keys, written by the input collaborator and read by the CPU"""
    def __init__(self):
        self.keys = [False] * KEY_COUNT
        self._sampled = [False] * KEY_COUNT

    def __getitem__(self, key):
        return self.keys[key & 0xF]

    def __setitem__(self, key, value):
        self.keys[key & 0xF] = bool(value)

    def press(self, key):
        self[key] = True

    def release(self, key):
        self[key] = False

    def sample(self):
        """
        take the per cycle snapshot of the keypad
        return the keys that went from released to pressed since the previous sample, lowest first
        a key pressed and released between two samples is never seen
        """
        newly = [k for k in range(KEY_COUNT) if self.keys[k] and not self._sampled[k]]
        self._sampled = list(self.keys)
        return newly

    def __str__(self):
        return "".join(f"{k:X}" for k in range(KEY_COUNT) if self.keys[k]) or "-"


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = [0] * STACK_SIZE
        self.sp = 0

    def append(self, address):
        if self.sp >= STACK_SIZE:
            raise RuntimeBoundsError("sp", self.sp + 1)
        self.addr_list[self.sp] = address
        self.sp += 1

    def pop(self):
        if self.sp <= 0:
            raise RuntimeBoundsError("sp", self.sp - 1)
        self.sp -= 1
        return self.addr_list[self.sp]

    def __len__(self):
        return self.sp

    def __str__(self):
        return "[" + ", ".join(f"0x{a:03x}" for a in self.addr_list[:self.sp]) + "]"

# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)

    def __setitem__(self, address, value):
        self.inner[address % MEMORY_SIZE] = value & 0xFF

    def __getitem__(self, address):
        return self.inner[address % MEMORY_SIZE]

    def read(self, address, length):
        """read length bytes starting at address, wrapping past the end of memory"""
        return bytes(self[address + i] for i in range(length))

    def load(self, font, rom):
        """place the font at 0x000 and the ROM at 0x200"""
        font, rom = bytes(font), bytes(rom)
        if len(font) > ROM_START_ADDRESS:
            raise LoadError(f"font is {len(font)} bytes, at most {ROM_START_ADDRESS} fit before the program area")
        if len(rom) > MAX_ROM_SIZE:
            raise LoadError(f"ROM is {len(rom)} bytes, at most {MAX_ROM_SIZE} fit in memory")
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[0x00:len(font)] = font
        self.inner[ROM_START_ADDRESS:ROM_START_ADDRESS+len(rom)] = rom


# ******************** CPU SECTION
class MachineState:
    """everything the CPU reads and writes"""
    def __init__(self):
        self.mem = Memory()
        self.stack = Stack()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.idx = 0        # specify where the sprites reside in memory
        self.dt = 0         # delay timer, active when non-zero
        self.st = 0         # sound timer, active when non-zero
        self.screen = FrameBuffer()
        self.keypad = Keypad()
        self.cycles = 0
        self.waiting = None     # register waiting for a keypress (FX0A), None when running

    def load(self, font, rom):
        self.mem.load(font, rom)
        self.pc = ROM_START_ADDRESS

    def check_bounds(self):
        """raise RuntimeBoundsError for the first register found outside its domain"""
        if not 0 <= self.pc < MEMORY_SIZE:
            raise RuntimeBoundsError("pc", self.pc)
        if not 0 <= self.stack.sp <= STACK_SIZE:
            raise RuntimeBoundsError("sp", self.stack.sp)
        if not 0 <= self.idx <= MAX_INDEX:
            raise RuntimeBoundsError("I", self.idx)
        for i, v in enumerate(self.v_regs):
            if not 0 <= v <= 0xFF:
                raise RuntimeBoundsError(f"V{i:X}", v)

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:03x} | IDX_REGISTER:0x{self.idx:03x} | VARIABLE_REGISTERS:{self.v_regs}"
        stack = f"STACK:{self.stack} | SP:{self.stack.sp}"
        timers = f"DT:{self.dt} | ST:{self.st} | CYCLES:{self.cycles}"
        flags = f"KEYS:{self.keypad} | WAITING:{'-' if self.waiting is None else f'V{self.waiting:X}'}"
        return f"{registers}\n{stack}\n{timers}\n{flags}"


class Chip8:
    """fetch, decode and execute instructions against a MachineState"""

    # these set the program counter themselves
    JUMPS = {0x00EE, 0x1000, 0x2000, 0xB000}

    def __init__(self, state, strict=False, rng=None):
        self.state = state
        self.strict = strict
        self.rng = rng or random.Random()
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

    def _set_v(self, x, value):
        self.state.v_regs[x] = value & 0xFF

    def _set_flag(self, value):
        self.state.v_regs[0xF] = 1 if value else 0

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKP V{ins.x:X}")
    def _skip_if_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        key = self.state.v_regs[ins.x]
        if self.state.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SKNP V{ins.x:X}")
    def _skip_if_not_pressed(self, ins):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        key = self.state.v_regs[ins.x]
        if not self.state.keypad[key]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{ins.x:X}, K")
    def _wait_keypress(self, ins):
        """suspend the machine until a key is pressed, its value will end up in Vx"""
        self.state.waiting = ins.x
        return locals()

    def resume(self, key):
        """store the key that ended a FX0A wait and leave the suspended state"""
        x = self.state.waiting
        self._set_v(x, key)
        self.state.waiting = None
        log.debug(f"key {key:X} pressed, V{x:X} = {key}, resuming")

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{ins.x:X}, DT")
    def _set_vx_dt(self, ins):
        """set Vx = DT (delay timer) value"""
        self._set_v(ins.x, self.state.dt)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD DT, V{ins.x:X}")
    def _set_dt_vx(self, ins):
        """set DT (delay timer) = Vx"""
        self.state.dt = self.state.v_regs[ins.x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD ST, V{ins.x:X}")
    def _set_st(self, ins):
        """set ST (sound timer) = Vx"""
        self.state.st = self.state.v_regs[ins.x]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CLS")
    def _clear_screen(self, ins):
        self.state.screen.clear()
        self.draw = True
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RET")
    def _return(self, ins):
        """return from a subroutine"""
        self.state.pc = self.state.stack.pop()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP 0x{ins.nnn:03x}")
    def _jump(self, ins):
        self.state.pc = ins.nnn
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: CALL 0x{ins.nnn:03x}")
    def _call_addr(self, ins):
        """push the address of the next instruction and jump to nnn"""
        self.state.stack.append(self.state.pc + 2)
        self.state.pc = ins.nnn
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{ins.x:X}, 0x{ins.kk:02x}")
    def _skip_if_eq(self, ins):
        if self.state.v_regs[ins.x] == ins.kk:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{ins.x:X}, 0x{ins.kk:02x}")
    def _skip_if_not_eq(self, ins):
        if self.state.v_regs[ins.x] != ins.kk:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SE V{ins.x:X}, V{ins.y:X}")
    def _skip_if_eq_regs(self, ins):
        if self.state.v_regs[ins.x] == self.state.v_regs[ins.y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SNE V{ins.x:X}, V{ins.y:X}")
    def _skip_if_not_eq_regs(self, ins):
        if self.state.v_regs[ins.x] != self.state.v_regs[ins.y]:
            self._goto_next_instruction()
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{ins.x:X}, 0x{ins.kk:02x}")
    def _set_vk(self, ins):
        """set the value of one of the 16 variable registers, Vx"""
        self._set_v(ins.x, ins.kk)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{ins.x:X}, 0x{ins.kk:02x}")
    def _add_to_vk(self, ins):
        """add to the value already present in one of the variable registers, VF untouched"""
        self._set_v(ins.x, self.state.v_regs[ins.x] + ins.kk)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{ins.x:X}, V{ins.y:X}")
    def _set_vx_to_vy(self, ins):
        """set the value of Vx equal to that of Vy"""
        self._set_v(ins.x, self.state.v_regs[ins.y])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: OR V{ins.x:X}, V{ins.y:X}")
    def _set_vx_or_vy(self, ins):
        v = self.state.v_regs
        self._set_v(ins.x, v[ins.x] | v[ins.y])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: AND V{ins.x:X}, V{ins.y:X}")
    def _set_vx_and_vy(self, ins):
        v = self.state.v_regs
        self._set_v(ins.x, v[ins.x] & v[ins.y])
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: XOR V{ins.x:X}, V{ins.y:X}")
    def _set_vx_xor_vy(self, ins):
        v = self.state.v_regs
        self._set_v(ins.x, v[ins.x] ^ v[ins.y])
        return locals()

    # the ALU operations below write VF first and Vx last, so with x == F the result wins over the flag

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD V{ins.x:X}, V{ins.y:X}")
    def _add_vx_vy(self, ins):
        """set the value of Vx to Vx + Vy, VF = carry"""
        total = self.state.v_regs[ins.x] + self.state.v_regs[ins.y]
        self._set_flag(total > 0xFF)
        self._set_v(ins.x, total)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUB V{ins.x:X}, V{ins.y:X}")
    def _sub_vx_vy(self, ins):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        vx, vy = self.state.v_regs[ins.x], self.state.v_regs[ins.y]
        self._set_flag(vx >= vy)
        self._set_v(ins.x, vx - vy)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHR V{ins.x:X}")
    def _shr(self, ins):
        """set Vx equal to Vx SHR 1, VF = bit shifted out"""
        vx = self.state.v_regs[ins.x]
        self._set_flag(vx & 0x1)
        self._set_v(ins.x, vx >> 1)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SUBN V{ins.x:X}, V{ins.y:X}")
    def _subn_vx_vy(self, ins):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        vx, vy = self.state.v_regs[ins.x], self.state.v_regs[ins.y]
        self._set_flag(vy >= vx)
        self._set_v(ins.x, vy - vx)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: SHL V{ins.x:X}")
    def _shl(self, ins):
        """set Vx equal to Vx SHL 1, VF = bit shifted out"""
        vx = self.state.v_regs[ins.x]
        self._set_flag(vx & 0x80)
        self._set_v(ins.x, vx << 1)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD I, 0x{ins.nnn:03x}")
    def _set_idx(self, ins):
        """set the value of the I register"""
        self.state.idx = ins.nnn
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: JP V0, 0x{ins.nnn:03x}")
    def _jump_plus(self, ins):
        self.state.pc = ins.nnn + self.state.v_regs[0x0]
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: RND V{ins.x:X}, 0x{ins.kk:02x}")
    def _random_byte_and(self, ins):
        rnd = self.rng.randint(0, 255)
        self._set_v(ins.x, rnd & ins.kk)
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: ADD I, V{ins.x:X}")
    def _add_to_idx(self, ins):
        """set I = I + Vx, VF = 1 if I went past the 12 bits of address space"""
        self.state.idx += self.state.v_regs[ins.x]
        self._set_flag(self.state.idx > 0xFFF)
        self.state.idx &= MAX_INDEX     # 16 bit register, wraps like the hardware word
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD F, V{ins.x:X}")
    def _select_char(self, ins):
        """set I to location of sprite for digit Vx"""
        self.state.idx = self.state.v_regs[ins.x] * GLYPH_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD B, V{ins.x:X}")
    def _bcd_repr(self, ins):
        """store the hundreds digit of Vx at I, the tens digit at I+1, the ones digit at I+2"""
        value, mem, idx = self.state.v_regs[ins.x], self.state.mem, self.state.idx
        mem[idx], mem[idx+1], mem[idx+2] = value // 100, (value // 10) % 10, value % 10
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD [I], V{ins.x:X}")
    def _store_vregs(self, ins):
        """store registers V0 through Vx (included) in memory starting at location I"""
        for i in range(ins.x + 1):
            self.state.mem[self.state.idx] = self.state.v_regs[i]
            self.state.idx = (self.state.idx + 1) % MEMORY_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: LD V{ins.x:X}, [I]")
    def _load_vregs(self, ins):
        """read registers V0 through Vx (included) from memory starting at location I"""
        for i in range(ins.x + 1):
            self._set_v(i, self.state.mem[self.state.idx])
            self.state.idx = (self.state.idx + 1) % MEMORY_SIZE
        return locals()

    @asm("mem_addr: 0x{mem_addr:04x}    instruction: DRW V{ins.x:X}, V{ins.y:X}, {ins.n}")
    def _to_screen(self, ins):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = erasure"""
        x, y = self.state.v_regs[ins.x], self.state.v_regs[ins.y]
        sprite = self.state.mem.read(self.state.idx, ins.n)
        # VF reports pixels turned OFF by the XOR, not overlap in general
        erased = self.state.screen.draw_sprite(x, y, sprite)
        self._set_flag(erased)
        self.draw = True
        return locals()

    def _unknown(self, ins):
        if self.strict:
            raise UnknownOpcodeError(ins.opcode, self.state.pc)
        log.warning(f"unknown opcode 0x{ins.opcode:04x} at 0x{self.state.pc:03x}, skipping it")

    def _goto_next_instruction(self):
        self.state.pc += 0x2

    def fetch(self):
        """each instruction is two bytes long, big-endian"""
        return self.state.mem[self.state.pc] << 8 | self.state.mem[self.state.pc + 1]

    def cycle(self):
        """fetch, decode and execute exactly one instruction"""
        self.draw = False
        ins = decode(self.fetch())
        instruction = self.instructions.get(ins.key, self._unknown)
        instruction(ins)
        if ins.key not in self.JUMPS:
            self._goto_next_instruction()
        if log.isEnabledFor(logging.DEBUG):
            s = self.state
            log.debug(f"    [I=0x{s.idx:03x}, mem:{s.mem[s.idx]},{s.mem[s.idx+1]},{s.mem[s.idx+2]}] "
                      f"[V0={s.v_regs[0]},V1={s.v_regs[1]},V2={s.v_regs[2]},VF={s.v_regs[0xF]}]")


# ******************** TIMERS SECTION
class TimerScheduler:
    """decrement DT and ST at 60Hz of emulated time, counted in CPU cycles"""
    def __init__(self, clock_hz=DEFAULT_CLOCK_HZ, on_beep=None):
        if clock_hz < MIN_CLOCK_HZ:
            raise ValueError(f"clock rate must be at least {MIN_CLOCK_HZ}Hz, got {clock_hz}")
        self.period = clock_hz // TIMER_HZ     # integer division, the drift from 60Hz is accepted
        self.on_beep = on_beep

    def tick(self, state):
        if state.cycles % self.period != 0:
            return
        if state.dt > 0:
            state.dt -= 1
        if state.st > 0:
            state.st -= 1
            if self.on_beep:
                self.on_beep()


# ******************** MAIN LOOP SECTION
class Machine:
    """
    owns a MachineState and drives it one cycle at a time:
    sample input, execute (or wait for a key), check bounds, count the cycle, tick the timers
    """
    def __init__(self, clock_hz=DEFAULT_CLOCK_HZ, strict=False, rng=None, on_draw=None, on_beep=None):
        self.state = MachineState()
        self.cpu = Chip8(self.state, strict=strict, rng=rng)
        self.timers = TimerScheduler(clock_hz, on_beep)
        self.clock_hz = clock_hz
        self.on_draw = on_draw

    def __str__(self):
        return str(self.state)

    def load(self, font, rom):
        self.state.load(font, rom)

    def step(self):
        """emulate one machine cycle, without any pacing"""
        state = self.state
        newly_pressed = state.keypad.sample()
        if state.waiting is not None:
            if newly_pressed:
                self.cpu.resume(newly_pressed[0])
        else:
            self.cpu.cycle()
            if self.cpu.draw and self.on_draw:
                self.on_draw(state.screen.snapshot())
        state.check_bounds()
        # a cycle is counted once it completes, the timers tick on every period boundary
        state.cycles = 0 if state.cycles >= CYCLES_WRAP else state.cycles + 1
        self.timers.tick(state)

    def run(self, poll, clock=time.perf_counter, sleep=time.sleep):
        """
        emulate cycles until poll returns False
        poll receives the keypad and updates it, once per cycle and before the instruction is executed
        """
        interval = 1.0 / self.clock_hz
        while True:
            start = clock()
            if not poll(self.state.keypad):
                break
            self.step()
            # pace to the target clock rate
            elapsed = clock() - start
            if elapsed < interval:
                sleep(interval - elapsed)
