# CHIP-8 INFO
# https://chip-8.github.io/extensions/#chip-8
# https://chip-8.github.io/links/
#
# COWGOD'S TECHNICAL REFERENCE (mnemonics used below)
# http://devernay.free.fr/hacks/chip8/C8TECH10.HTM
#
# MASTERING CHIP-8
# https://github.com/mattmikolay/chip-8/wiki/Mastering-CHIP%E2%80%908


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

MEMORY_SIZE = 4096
FONT_START_ADDRESS = 0x050
FONT_END_ADDRESS = FONT_START_ADDRESS + len(C8_FONTS)
FONT_HEIGHT = 5
ROM_START_ADDRESS = 0x200
STACK_SIZE = 16
SCREEN_HEIGHT = 32
SCREEN_WIDTH = 64
SPRITE_WIDTH = 8
SPRITE_EDGES = ("wrap", "clip", "error")

DEBUG = True if int(os.getenv('DEBUG', 0)) >= 1 else False
TIMER_DIVIDER = int(os.getenv('TIMER_DIVIDER', 1))         # steps per timer decrement, 0 leaves the timers to the caller
SPRITE_EDGE = os.getenv('SPRITE_EDGE', 'wrap')             # what happens to sprite pixels falling off the screen
STRICT_DECODING = True if int(os.getenv('STRICT_DECODING', 0)) >= 1 else False


# ******************** ERRORS SECTION
class Chip8Error(Exception):
    """base class of every error raised by the emulator"""


class DecodeError(Chip8Error):
    """the opcode does not match any known encoding"""
    def __init__(self, opcode, address=None):
        self.opcode = opcode
        self.address = address
        msg = f"unable to decode opcode 0x{opcode:04x}"
        if address is not None:
            msg += f" at 0x{address:04x}"
        super().__init__(msg)


class UnhandledOpcodeError(DecodeError):
    """the opcode belongs to the 8xyN or FxNN family but its sub-opcode is unknown"""


class LoadError(Chip8Error):
    """the ROM cannot be read or does not fit in memory"""


class StackError(Chip8Error, IndexError):
    """call stack overflow or underflow"""


class AddressError(Chip8Error, IndexError):
    """access outside memory, the keypad or the screen"""


# ******************** UTILITIES SECTION
def asm(msg):
    """decorator to print out the ASM of the instruction being called"""
    def decorator(fn):
        @wraps(fn)
        def wrapper_fn(*args, **kwargs):
            mem_addr = args[0].opcode_addr  # args[0] equals self of the decorated method
            vals = fn(*args, **kwargs)      # use the locals() values of each decorated function in the print
            vals['mem_addr'] = mem_addr
            if DEBUG: print(f"mem_addr: 0x{mem_addr:04x}    instruction: " + msg.format(**vals))
        return wrapper_fn
    return decorator


# ******************** DECODER SECTION
Instruction = namedtuple('Instruction', ['name', 'operands'])

# WATCH OUT: masks order is important!!!
# the most specific mask must come first, as decode stops at the first match
OPCODE_MASKS = (
    (0xFFFF, {0x00E0: 'CLS', 0x00EE: 'RET'}),
    (0xF0FF, {0xE09E: 'SKP', 0xE0A1: 'SKNP',
              0xF007: 'LD_VX_DT', 0xF00A: 'LD_VX_K', 0xF015: 'LD_DT_VX',
              0xF018: 'LD_ST_VX', 0xF01E: 'ADD_I', 0xF029: 'LD_F',
              0xF033: 'LD_B', 0xF055: 'LD_I_VX', 0xF065: 'LD_VX_I'}),
    (0xF00F, {0x8000: 'LD', 0x8001: 'OR', 0x8002: 'AND', 0x8003: 'XOR',
              0x8004: 'ADD', 0x8005: 'SUB', 0x8006: 'SHR', 0x8007: 'SUBN',
              0x800E: 'SHL'}),
    (0xF000, {0x0000: 'SYS', 0x1000: 'JP', 0x2000: 'CALL', 0x3000: 'SE_BYTE',
              0x4000: 'SNE_BYTE', 0x5000: 'SE', 0x6000: 'LD_BYTE',
              0x7000: 'ADD_BYTE', 0x9000: 'SNE', 0xA000: 'LD_I',
              0xB000: 'JP_V0', 0xC000: 'RND', 0xD000: 'DRW'}),
)

# operand layout of each instruction, as a sequence of opcode fields
OPERANDS = {
    'CLS': (), 'RET': (),
    'SYS': ('nnn',), 'JP': ('nnn',), 'CALL': ('nnn',), 'LD_I': ('nnn',), 'JP_V0': ('nnn',),
    'SE_BYTE': ('x', 'kk'), 'SNE_BYTE': ('x', 'kk'), 'LD_BYTE': ('x', 'kk'),
    'ADD_BYTE': ('x', 'kk'), 'RND': ('x', 'kk'),
    'SE': ('x', 'y'), 'SNE': ('x', 'y'), 'LD': ('x', 'y'), 'OR': ('x', 'y'),
    'AND': ('x', 'y'), 'XOR': ('x', 'y'), 'ADD': ('x', 'y'), 'SUB': ('x', 'y'),
    'SUBN': ('x', 'y'),
    'SHR': ('x',), 'SHL': ('x',),
    'DRW': ('x', 'y', 'n'),
    'SKP': ('x',), 'SKNP': ('x',), 'LD_VX_DT': ('x',), 'LD_VX_K': ('x',),
    'LD_DT_VX': ('x',), 'LD_ST_VX': ('x',), 'ADD_I': ('x',), 'LD_F': ('x',),
    'LD_B': ('x',), 'LD_I_VX': ('x',), 'LD_VX_I': ('x',),
}


def opcode_fields(opcode):
    """split an opcode in the bit fields used as operands"""
    return {
        'x': (opcode & 0x0F00) >> 8,
        'y': (opcode & 0x00F0) >> 4,
        'n': opcode & 0x000F,
        'kk': opcode & 0x00FF,
        'nnn': opcode & 0x0FFF,
    }


def decode(opcode, strict=False):
    """decode opcodes using masks and return the respective instruction"""
    name = None
    for mask, ops in OPCODE_MASKS:
        if (opcode & mask) in ops:
            name = ops[opcode & mask]
            break
    if name is None:
        # 8xyN and FxNN are fully owned by their families, an unknown N there is not a stray word
        if opcode & 0xF000 in (0x8000, 0xF000):
            raise UnhandledOpcodeError(opcode)
        raise DecodeError(opcode)
    if strict and name in ('SE', 'SNE') and opcode & 0x000F:
        raise DecodeError(opcode)
    fields = opcode_fields(opcode)
    return Instruction(name, tuple(fields[f] for f in OPERANDS[name]))


# ******************** MEMORY SECTION
# ********** WRAPS A LIST TO REPRESENT A STACK WITH A LIMITED SIZE OF 16 ADDRESSES
class Stack:
    def __init__(self):
        self.addr_list = [0] * STACK_SIZE
        self.sp = 0

    def __str__(self):
        return f"{self.addr_list[:self.sp]}"

    def append(self, address):
        if self.sp >= STACK_SIZE:
            raise StackError(f"The CHIP-8 stack can contain at most {STACK_SIZE} addresses. Limit exceeded")
        self.addr_list[self.sp] = address
        self.sp += 1

    def pop(self):
        if self.sp == 0:
            raise StackError("Return with an empty CHIP-8 stack")
        self.sp -= 1
        return self.addr_list[self.sp]


# ********** WRAPS A BYTEARRAY TO REPRESENT THE MAIN MEMORY WITH A LIMITED SIZE OF 4KB
class Memory:
    def __init__(self):
        self.inner = bytearray(MEMORY_SIZE)
        self.inner[FONT_START_ADDRESS:FONT_END_ADDRESS] = bytes(C8_FONTS)

    @staticmethod
    def _bounds(key):
        if isinstance(key, slice):
            start = 0 if key.start is None else key.start
            stop = MEMORY_SIZE if key.stop is None else key.stop
        else:
            start, stop = key, key + 1
        if start < 0 or stop > MEMORY_SIZE:
            raise AddressError(f"Memory access out of range: 0x{start:04x}-0x{stop - 1:04x}")
        return start, stop

    def __setitem__(self, key, value):
        start, stop = self._bounds(key)
        if start < FONT_END_ADDRESS and stop > FONT_START_ADDRESS:
            raise AddressError(f"Write into the font area: 0x{start:04x}-0x{stop - 1:04x}")
        self.inner[key] = value

    def __getitem__(self, key):
        self._bounds(key)
        return self.inner[key]

    def load_rom(self, rom):
        """copy the ROM bytes in memory starting at the program address"""
        end = ROM_START_ADDRESS + len(rom)
        if end > MEMORY_SIZE:
            raise LoadError(f"ROM too large: {len(rom)} bytes, at most {MEMORY_SIZE - ROM_START_ADDRESS} fit in memory")
        self.inner[ROM_START_ADDRESS:end] = rom
        if DEBUG: print(f"A ROM of {len(rom)} bytes has been loaded successfully")


def read_rom(path):
    """read the ROM file at the user specified path, raise LoadError if it can't be read"""
    try:
        with open(path, mode='rb') as f:
            return f.read()
    except OSError as e:
        raise LoadError(f"Unable to read the ROM at path {path}: {e}") from e


# ******************** CPU SECTION
class Chip8:
    def __init__(self, timer_divider=TIMER_DIVIDER, sprite_edge=SPRITE_EDGE, strict=STRICT_DECODING, rng=None):
        if sprite_edge not in SPRITE_EDGES:
            raise ValueError(f"sprite_edge must be one of {SPRITE_EDGES}, not {sprite_edge!r}")
        if timer_divider < 0:
            raise ValueError("timer_divider can't be negative")
        self.mem = Memory()
        self.stack = Stack()
        self.v_regs = [0] * 16
        self.pc = ROM_START_ADDRESS
        self.opcode_addr = ROM_START_ADDRESS    # address of the instruction being executed
        self.idx = 0    # specify where the sprites reside in memory
        self.dt = 0     # delay timer, active when non-zero
        self.st = 0     # sound timer, active when non-zero
        self.pixels = [[False] * SCREEN_WIDTH for _ in range(SCREEN_HEIGHT)]
        self.should_draw = True     # show a blank frame first
        self.keys = [False] * 16
        self.steps = 0
        self.timer_divider = timer_divider
        self.sprite_edge = sprite_edge
        self.strict = strict
        self.rng = rng or random.Random()
        self.instructions = {
            'SYS': self._sys,
            'CLS': self._clear_screen,
            'RET': self._return,
            'JP': self._jump,
            'CALL': self._call_addr,
            'SE_BYTE': self._skip_if_eq,
            'SNE_BYTE': self._skip_if_not_eq,
            'SE': self._skip_if_eq_regs,
            'LD_BYTE': self._set_vk,
            'ADD_BYTE': self._add_to_vk,
            'LD': self._set_vx_to_vy,
            'OR': self._set_vx_or_vy,
            'AND': self._set_vx_and_vy,
            'XOR': self._set_vx_xor_vy,
            'ADD': self._add_vx_vy,
            'SUB': self._sub_vx_vy,
            'SHR': self._shr,
            'SUBN': self._subn_vx_vy,
            'SHL': self._shl,
            'SNE': self._skip_if_not_eq_regs,
            'LD_I': self._set_idx,
            'JP_V0': self._jump_plus,
            'RND': self._random_byte_and,
            'DRW': self._to_screen,
            'SKP': self._skip_if_pressed,
            'SKNP': self._skip_if_not_pressed,
            'LD_VX_DT': self._set_vx_dt,
            'LD_VX_K': self._wait_keypress,
            'LD_DT_VX': self._set_dt_vx,
            'LD_ST_VX': self._set_st,
            'ADD_I': self._add_to_idx,
            'LD_F': self._select_char,
            'LD_B': self._bcd_repr,
            'LD_I_VX': self._store_vregs,
            'LD_VX_I': self._load_vregs,
        }

    def __str__(self):
        registers = f"PC_REGISTER:0x{self.pc:04x} | IDX_REGISTER:0x{self.idx:04x} | VARIABLE_REGISTERS:{self.v_regs}"
        timers = f"DELAY_TIMER:{self.dt} | SOUND_TIMER:{self.st}"
        stack = f"STACK:{self.stack} | SP:{self.stack.sp}"
        flags = f"DRAW: {self.should_draw}"
        return f"{registers}\n{timers}\n{stack}\n{flags}"

    def _key(self, x):
        key = self.v_regs[x]
        if key >= len(self.keys):
            raise AddressError(f"V{x:X} holds 0x{key:02x}, which is not a key of the keypad")
        return self.keys[key]

    @asm("SYS 0x{address:03x}")
    def _sys(self, address):
        """machine code routines of the original interpreters are ignored"""
        return locals()

    @asm("CLS")
    def _clear_screen(self):
        self.pixels = [[False] * SCREEN_WIDTH for _ in range(SCREEN_HEIGHT)]
        self.should_draw = True
        return locals()

    @asm("RET")
    def _return(self):
        """return from a subroutine"""
        self.pc = self.stack.pop()
        return locals()

    @asm("JP 0x{address:03x}")
    def _jump(self, address):
        self.pc = address
        return locals()

    @asm("CALL 0x{address:03x}")
    def _call_addr(self, address):
        self.stack.append(self.pc)
        self.pc = address
        return locals()

    @asm("SE V{x:X}, {comparison_value}")
    def _skip_if_eq(self, x, comparison_value):
        if self.v_regs[x] == comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("SNE V{x:X}, {comparison_value}")
    def _skip_if_not_eq(self, x, comparison_value):
        if self.v_regs[x] != comparison_value:
            self._goto_next_instruction()
        return locals()

    @asm("SE V{x:X}, V{y:X}")
    def _skip_if_eq_regs(self, x, y):
        if self.v_regs[x] == self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("SNE V{x:X}, V{y:X}")
    def _skip_if_not_eq_regs(self, x, y):
        if self.v_regs[x] != self.v_regs[y]:
            self._goto_next_instruction()
        return locals()

    @asm("LD V{x:X}, {value}")
    def _set_vk(self, x, value):
        """set the value of one of the 16 variable registers, Vx"""
        self.v_regs[x] = value
        return locals()

    @asm("ADD V{x:X}, {value}")
    def _add_to_vk(self, x, value):
        """add to the value already present in one of the variable registers, VF untouched"""
        self.v_regs[x] = (self.v_regs[x] + value) & 0xFF    # keep only the lowest 8 bits from the result and store them in Vx
        return locals()

    @asm("LD V{x:X}, V{y:X}")
    def _set_vx_to_vy(self, x, y):
        """set the value of Vx equal to that of Vy"""
        self.v_regs[x] = self.v_regs[y]
        return locals()

    @asm("OR V{x:X}, V{y:X}")
    def _set_vx_or_vy(self, x, y):
        """set the value of Vx to Vx OR Vy"""
        self.v_regs[x] |= self.v_regs[y]
        return locals()

    @asm("AND V{x:X}, V{y:X}")
    def _set_vx_and_vy(self, x, y):
        """set the value of Vx to Vx AND Vy"""
        self.v_regs[x] &= self.v_regs[y]
        return locals()

    @asm("XOR V{x:X}, V{y:X}")
    def _set_vx_xor_vy(self, x, y):
        """set the value of Vx to Vx XOR Vy"""
        self.v_regs[x] ^= self.v_regs[y]
        return locals()

    @asm("ADD V{x:X}, V{y:X}")
    def _add_vx_vy(self, x, y):
        """set the value of Vx to Vx + Vy, VF = carry"""
        sum = self.v_regs[x] + self.v_regs[y]
        self.v_regs[x] = sum & 0xFF     # keep only the lowest 8 bits from the result and store them in Vx
        self.v_regs[0xF] = 1 if sum > 255 else 0
        return locals()

    @asm("SUB V{x:X}, V{y:X}")
    def _sub_vx_vy(self, x, y):
        """set the value of Vx to Vx - Vy, VF = NOT borrow"""
        no_borrow = 1 if self.v_regs[x] > self.v_regs[y] else 0
        self.v_regs[x] = (self.v_regs[x] - self.v_regs[y]) & 0xFF
        self.v_regs[0xF] = no_borrow
        return locals()

    @asm("SHR V{x:X}")
    def _shr(self, x):
        """set Vx equal to Vx SHR 1"""
        LSB = self.v_regs[x] & 0x1
        self.v_regs[x] = self.v_regs[x] >> 1
        self.v_regs[0xF] = LSB
        return locals()

    @asm("SUBN V{x:X}, V{y:X}")
    def _subn_vx_vy(self, x, y):
        """set the value of Vx to Vy - Vx, VF = NOT borrow"""
        no_borrow = 1 if self.v_regs[y] > self.v_regs[x] else 0
        self.v_regs[x] = (self.v_regs[y] - self.v_regs[x]) & 0xFF
        self.v_regs[0xF] = no_borrow
        return locals()

    @asm("SHL V{x:X}")
    def _shl(self, x):
        """set Vx equal to Vx SHL 1"""
        MSB = (self.v_regs[x] & 0x80) >> 7
        self.v_regs[x] = (self.v_regs[x] << 1) & 0xFF   # multiply by 2 and keep only the lowest 8 bits from the result
        self.v_regs[0xF] = MSB
        return locals()

    @asm("LD I, 0x{value:03x}")
    def _set_idx(self, value):
        """set the value of the I register"""
        self.idx = value
        return locals()

    @asm("JP V0, 0x{address:03x}")
    def _jump_plus(self, address):
        v0 = self.v_regs[0x0]
        self.pc = address + v0
        return locals()

    @asm("RND V{x:X}, 0x{kk:02x}")
    def _random_byte_and(self, x, kk):
        rnd = self.rng.randint(0, 255)
        self.v_regs[x] = rnd & kk
        return locals()

    @asm("DRW V{x:X}, V{y:X}, {n_bytes}")
    def _to_screen(self, x, y, n_bytes):
        """display n-byte sprite starting at memory location I at (Vx, Vy), set VF = collision"""
        # only the origin wraps, what happens past the edges depends on self.sprite_edge
        x_origin, y_origin = self.v_regs[x] % SCREEN_WIDTH, self.v_regs[y] % SCREEN_HEIGHT
        collision = 0
        # step through each sprite byte, starting at self.idx
        for i, sprite_byte in enumerate(self.mem[self.idx:self.idx + n_bytes]):
            for j in range(SPRITE_WIDTH):
                if not (sprite_byte >> (7 - j)) & 1:
                    continue    # XOR with 0 leaves the pixel as it is
                x_coordinate, y_coordinate = x_origin + j, y_origin + i
                if x_coordinate >= SCREEN_WIDTH or y_coordinate >= SCREEN_HEIGHT:
                    if self.sprite_edge == 'clip':
                        continue
                    if self.sprite_edge == 'error':
                        raise AddressError(f"Sprite pixel off screen at ({x_coordinate}, {y_coordinate})")
                    x_coordinate %= SCREEN_WIDTH
                    y_coordinate %= SCREEN_HEIGHT
                # collision detection
                # the only case when a pixel gets erased is when it was ON and is turned ON again
                if self.pixels[y_coordinate][x_coordinate]:
                    collision = 1
                self.pixels[y_coordinate][x_coordinate] = not self.pixels[y_coordinate][x_coordinate]
                self.should_draw = True
        self.v_regs[0xF] = collision
        return locals()

    @asm("SKP V{x:X}")
    def _skip_if_pressed(self, x):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is pressed"""
        if self._key(x):
            self._goto_next_instruction()
        return locals()

    @asm("SKNP V{x:X}")
    def _skip_if_not_pressed(self, x):
        """skip the following instruction if the key corresponding to the hex value stored in Vx is NOT pressed"""
        if not self._key(x):
            self._goto_next_instruction()
        return locals()

    @asm("LD V{x:X}, DT")
    def _set_vx_dt(self, x):
        """set Vx = DT (delay timer) value"""
        self.v_regs[x] = self.dt
        return locals()

    @asm("LD V{x:X}, K")
    def _wait_keypress(self, x):
        """wait for a key press and store its value in Vx"""
        pressed = [key for key, down in enumerate(self.keys) if down]
        if pressed:
            self.v_regs[x] = pressed[0]
        else:
            self.pc -= 0x2      # stay on the same instruction until a key is pressed
        return locals()

    @asm("LD DT, V{x:X}")
    def _set_dt_vx(self, x):
        """set DT (delay timer) = Vx"""
        self.dt = self.v_regs[x]
        return locals()

    @asm("LD ST, V{register:X}")
    def _set_st(self, register):
        """set ST = Vx"""
        self.st = self.v_regs[register]
        return locals()

    @asm("ADD I, V{register:X}")
    def _add_to_idx(self, register):
        """set I = I + Vx"""
        self.idx = (self.idx + self.v_regs[register]) & 0xFFFF
        return locals()

    @asm("LD F, V{register:X}")
    def _select_char(self, register):
        """set I to location of sprite for digit Vx"""
        self.idx = FONT_START_ADDRESS + self.v_regs[register] * FONT_HEIGHT
        return locals()

    @asm("LD B, V{x:X}")
    def _bcd_repr(self, x):
        """store the hundreds digit of Vx in memory at I, the tens digit at I+1, the ones digit at I+2"""
        hundreds, rest = divmod(self.v_regs[x], 100)
        tens, ones = divmod(rest, 10)
        self.mem[self.idx:self.idx + 3] = bytes((hundreds, tens, ones))
        return locals()

    @asm("LD [I], V{x:X}")
    def _store_vregs(self, x):
        """store registers V0 through Vx (included) in memory starting at location I"""
        self.mem[self.idx:self.idx + x + 1] = bytes(self.v_regs[:x + 1])
        return locals()

    @asm("LD V{x:X}, [I]")
    def _load_vregs(self, x):
        """read registers V0 through Vx (included) from memory starting at location I"""
        self.v_regs[:x + 1] = self.mem[self.idx:self.idx + x + 1]
        return locals()

    def _goto_next_instruction(self):
        self.pc += 0x2

    def tick_timers(self):
        """decrement the delay/sound timers (dt/st) without going below zero"""
        if self.dt > 0:
            self.dt -= 1
        if self.st > 0:
            self.st -= 1

    def execute(self, instruction):
        self.instructions[instruction.name](*instruction.operands)

    def step(self):
        """fetch, decode and execute one instruction, then update the timers"""
        # fetch (each instruction is two bytes long)
        self.opcode_addr = self.pc
        opcode = self.mem[self.pc] << 8 | self.mem[self.pc + 1]
        self._goto_next_instruction()
        if DEBUG: print(f"opcode: 0x{opcode:04x}", end="    ")
        # decode + execute
        try:
            instruction = decode(opcode, strict=self.strict)
        except DecodeError as e:
            raise type(e)(opcode, self.opcode_addr) from None
        self.execute(instruction)
        # delay/sound timers (dt/st)
        self.steps += 1
        if self.timer_divider and self.steps % self.timer_divider == 0:
            self.tick_timers()
